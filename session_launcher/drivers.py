"""Graphics-driver discovery and the stable driver alias.

On a regular NixOS boot, systemd-tmpfiles links /run/opengl-driver to the
active ``*-graphics-drivers`` closure. Images that mask tmpfiles never get that
link, so Mesa/GBM/GLX (and Xorg) cannot find their runtime driver files. We
publish it here instead.

Selection rule: candidates are enumerated in lexical order and the first one
wins. More than one candidate is logged as a warning since the choice is then
arbitrary from the user's point of view.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Sequence

from .config import DriverConfig
from .errors import DriverLinkError, DriverNotFoundError

logger = logging.getLogger(__name__)


def find_driver_candidates(search_dir: str | Path, pattern: str) -> List[Path]:
    root = Path(search_dir)
    if not root.is_dir():
        logger.debug("driver search dir missing: %s", root)
        return []
    try:
        matches = [p for p in root.glob(pattern) if not p.name.startswith(".") and p.is_dir()]
    except OSError as e:
        logger.warning("cannot scan %s: %s", root, e)
        return []
    return sorted(matches, key=lambda p: p.name)


def select_driver(candidates: Sequence[Path], *, search_dir: str | Path = "", pattern: str = "") -> Path:
    if not candidates:
        raise DriverNotFoundError(str(search_dir), pattern)
    chosen = candidates[0]
    if len(candidates) > 1:
        logger.warning(
            "%d driver directories match %s; using %s (others: %s)",
            len(candidates),
            pattern or "pattern",
            chosen,
            ", ".join(str(c) for c in candidates[1:]),
        )
    return chosen


def link_alias(target: str | Path, alias: str | Path) -> Path:
    """Point ``alias`` at ``target``, replacing an existing link atomically."""
    target = Path(target)
    alias = Path(alias)
    if alias.is_dir() and not alias.is_symlink():
        raise DriverLinkError(f"refusing to replace real directory {alias} with a driver link")
    try:
        alias.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DriverLinkError(f"cannot create {alias.parent}: {e}") from e

    tmp = alias.with_name(f".{alias.name}.tmp-{os.getpid()}")
    try:
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(str(target), str(tmp))
        os.replace(str(tmp), str(alias))
    except OSError as e:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise DriverLinkError(f"cannot link {alias} -> {target}: {e}") from e
    logger.info("linked %s -> %s", alias, target)
    return alias


def link_driver(cfg: DriverConfig) -> Path:
    """Search, select, link. Returns the selected driver directory."""
    candidates = find_driver_candidates(cfg.search_dir, cfg.pattern)
    chosen = select_driver(candidates, search_dir=cfg.search_dir, pattern=cfg.pattern)
    link_alias(chosen, cfg.alias)
    return chosen


__all__ = ["find_driver_candidates", "link_alias", "link_driver", "select_driver"]
