"""
Deletes torrent staging directories.
"""

import asyncio
import logging
import os
import stat
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageJanitor:
    """Recursively wipes staging directories under one root."""

    def __init__(self, staging_root: Path) -> None:
        """
        Args:
            staging_root: Only paths inside this directory may be wiped
        """
        self.staging_root = Path(staging_root).resolve()

    def staging_path(self, info_hash: str) -> Path:
        """Directory used for one torrent's pieces."""
        return self.staging_root / info_hash

    async def wipe(self, path: Path) -> int:
        """
        Delete ``path`` and everything under it without blocking the loop.

        Returns:
            Number of entries that could not be removed
        """
        return await asyncio.to_thread(self.wipe_sync, path)

    def wipe_sync(self, path: Path) -> int:
        """
        Delete ``path`` and everything under it.

        A missing path is a no-op. Symlinks are unlinked, never followed.
        Entries that cannot be removed are logged and skipped.

        Returns:
            Number of entries that could not be removed

        Raises:
            ValueError: If ``path`` is not inside the staging root
        """
        path = Path(path)
        # resolve the parent only, so a symlinked staging dir is not followed
        target = Path(os.path.normpath(path.parent.resolve() / path.name))
        if target == self.staging_root or not target.is_relative_to(self.staging_root):
            raise ValueError(f"Refusing to wipe {path}: outside staging root {self.staging_root}")

        try:
            mode = os.lstat(target).st_mode
        except FileNotFoundError:
            return 0

        if not stat.S_ISDIR(mode):
            return self._unlink(target)

        failures = self._wipe_tree(target)
        try:
            target.rmdir()
        except OSError as e:
            logger.warning(f"Could not remove directory {target}: {e}")
            failures += 1
        else:
            logger.info(f"Deleted staging directory {target}")
        return failures

    def _wipe_tree(self, directory: Path) -> int:
        failures = 0
        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            logger.warning(f"Could not list {directory}: {e}")
            return 1

        for entry in entries:
            entry_path = Path(entry.path)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                is_dir = False
            if is_dir:
                failures += self._wipe_tree(entry_path)
                try:
                    entry_path.rmdir()
                except OSError as e:
                    logger.warning(f"Could not remove directory {entry_path}: {e}")
                    failures += 1
            else:
                failures += self._unlink(entry_path)
        return failures

    @staticmethod
    def _unlink(path: Path) -> int:
        try:
            path.unlink()
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.warning(f"Could not delete {path}: {e}")
            return 1
        return 0
