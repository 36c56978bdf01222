"""Online backups of the signal store with simple rotation."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sweepwatch.store.store import SignalStore
from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)

BACKUP_PREFIX = "sweepwatch-"
BACKUP_SUFFIX = ".db"


def list_backups(backup_dir: str) -> List[Path]:
    root = Path(backup_dir)
    if not root.is_dir():
        return []
    found = [p for p in root.iterdir() if p.name.startswith(BACKUP_PREFIX) and p.name.endswith(BACKUP_SUFFIX)]
    return sorted(found, key=lambda p: (p.stat().st_mtime, p.name))


def prune_backups(backup_dir: str, keep: int) -> List[Path]:
    """Delete all but the newest ``keep`` backups; returns removed paths."""
    backups = list_backups(backup_dir)
    stale = backups[:-keep] if keep > 0 else backups
    for path in stale:
        path.unlink()
        logger.info("Removed old backup %s", path.name)
    return stale


def backup_database(
    store: SignalStore,
    backup_dir: str,
    *,
    keep: int = 7,
    when: Optional[datetime] = None,
) -> Path:
    """Copy the live database into ``backup_dir`` and rotate old copies."""
    os.makedirs(backup_dir, exist_ok=True)
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y%m%d-%H%M%S")
    dest = Path(backup_dir) / f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"
    n = 1
    while dest.exists():
        dest = Path(backup_dir) / f"{BACKUP_PREFIX}{stamp}-{n}{BACKUP_SUFFIX}"
        n += 1
    tmp = dest.with_suffix(".partial")
    try:
        store.backup_to(str(tmp))
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()
    logger.info("Backup written to %s (%d bytes)", dest, dest.stat().st_size)
    prune_backups(backup_dir, keep)
    return dest
