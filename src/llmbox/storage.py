# src/llmbox/storage.py
"""
Workspace storage: persistent copies of sandbox working directories.

A sandbox with both a host mount directory and a storage path has its
mount seeded from storage when the container is created, and copied back
when the sandbox leaves its key (released to the pool or removed).

Failures never abort the sandbox lifecycle; they are logged and
reported through the boolean return values.

Usage:
    >>> storage = LocalWorkspaceStorage()
    >>> storage.download_folder("/srv/workspaces/alice", "/tmp/llmbox/abc123")
    True
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspaceStorage(ABC):
    """Abstract store that workspace directories are copied from and to."""

    @abstractmethod
    def download_folder(self, storage_path: str, local_dir: str) -> bool:
        """
        Copy the contents stored at ``storage_path`` into ``local_dir``.

        Returns:
            True if the copy completed
        """

    @abstractmethod
    def upload_folder(self, local_dir: str, storage_path: str) -> bool:
        """
        Copy the contents of ``local_dir`` to ``storage_path``.

        Returns:
            True if the copy completed
        """


class LocalWorkspaceStorage(WorkspaceStorage):
    """
    Storage on a local or mounted filesystem.

    Copies merge into the target: existing files are overwritten, files
    only present in the target are kept.
    """

    def download_folder(self, storage_path: str, local_dir: str) -> bool:
        return self._copy(storage_path, local_dir)

    def upload_folder(self, local_dir: str, storage_path: str) -> bool:
        return self._copy(local_dir, storage_path)

    def _copy(self, source: str, target: str) -> bool:
        if not source or not target:
            logger.warning("Empty source or target path, skipping workspace copy")
            return False

        src = Path(source).expanduser()
        dst = Path(target).expanduser()
        if not src.exists():
            logger.warning(f"Workspace source does not exist: {src}")
            return False

        try:
            if src.is_dir():
                shutil.copytree(src, dst, dirs_exist_ok=True)
            else:
                dst.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst / src.name)
        except OSError as e:
            logger.error(f"Failed to copy workspace from {src} to {dst}: {e}")
            return False

        logger.info(f"Copied workspace from {src} to {dst}")
        return True
