#!/usr/bin/env python3
"""Session launcher.

One command to bring up the graphical session on a bare image:
  - runtime directories + bus machine id
  - /run/opengl-driver -> active *-graphics-drivers directory
  - message bus, X server, desktop session (detached, logging under /var/log)

Usage:
  ./launch.py                 # start with the default profile
  ./launch.py --dry-run       # show what would be started
  ./launch.py check           # preflight only
  ./launch.py stop            # stop what the last start launched
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from session_launcher.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
