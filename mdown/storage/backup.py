"""
Day-bucketed snapshots of the progress ledger.
"""

import logging
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Callable

from mdown.exceptions import ConfigurationError
from mdown.models.catalog import BackupSnapshot
from mdown.storage.ledger import LEDGER_FILENAME

log = logging.getLogger(__name__)


class BackupManager:
    """
    Copies the ledger into `backups/<YYYY-MM-DD>.sqlite`.

    One snapshot is kept per calendar day. Later calls on the same day leave
    the existing snapshot alone unless forced.
    """

    def __init__(self, data_dir: Path, clock: Callable[[], datetime] = datetime.now):
        self.ledger_path = data_dir / LEDGER_FILENAME
        self.backup_dir = data_dir / "backups"
        self._clock = clock

    def bucket_path(self, day_key: str) -> Path:
        return self.backup_dir / f"{day_key}.sqlite"

    def snapshot(self, force: bool = False) -> BackupSnapshot | None:
        """
        Creates today's snapshot.

        Returns:
            The snapshot written, or None if today's bucket already existed and
            `force` was not set (or there is no ledger yet).
        """
        if not self.ledger_path.is_file():
            log.debug("No ledger to back up yet.")
            return None

        now = self._clock()
        day_key = now.strftime("%Y-%m-%d")
        target = self.bucket_path(day_key)
        if target.exists() and not force:
            log.debug(f"Backup for {day_key} already exists, keeping it.")
            return None

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        tmp_target = target.with_suffix(".sqlite.tmp")
        source = sqlite3.connect(self.ledger_path)
        try:
            dest = sqlite3.connect(tmp_target)
            try:
                source.backup(dest)
            finally:
                dest.close()
        finally:
            source.close()
        tmp_target.replace(target)
        log.info(f"[green]✓ Ledger backed up to[/green] [dim]{target.name}[/dim]")
        return BackupSnapshot(created_at=now, day_key=day_key, path=target)

    def list_snapshots(self) -> list[BackupSnapshot]:
        """Lists existing snapshots, newest first."""
        if not self.backup_dir.is_dir():
            return []
        snapshots = []
        for path in self.backup_dir.glob("*.sqlite"):
            try:
                created = datetime.strptime(path.stem, "%Y-%m-%d")
            except ValueError:
                continue
            snapshots.append(
                BackupSnapshot(created_at=created, day_key=path.stem, path=path)
            )
        return sorted(snapshots, key=lambda s: s.day_key, reverse=True)

    def restore(self, day_key: str) -> Path:
        """
        Replaces the ledger with the snapshot of `day_key`.
        The caller must hold the working-directory lock.
        """
        source = self.bucket_path(day_key)
        if not source.is_file():
            raise ConfigurationError(f"No backup exists for '{day_key}'.")
        for suffix in ("-wal", "-shm"):
            sidecar = self.ledger_path.with_name(self.ledger_path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()
        shutil.copyfile(source, self.ledger_path)
        log.info(f"[green]✓ Ledger restored from {day_key}[/green]")
        return self.ledger_path
