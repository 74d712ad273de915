"""
Local key-path-addressable blob storage.

Keys are relative paths under a root directory. Writes replace the target
atomically so concurrent readers never observe a half-written document.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class LocalStorage:
    """Blob store rooted at a directory on the local filesystem."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def path(self, key: str) -> Path:
        """Absolute path for a key."""
        return self.root / key

    def exists(self, key: str) -> bool:
        return self.path(key).exists()

    def get(self, key: str) -> str:
        """Read a blob as text. Raises FileNotFoundError if missing."""
        return self.path(key).read_text(encoding="utf-8")

    def put(self, key: str, contents: str) -> None:
        """Write a blob, creating parent directories as needed."""
        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(contents)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def make_directory(self, key: str) -> None:
        self.path(key).mkdir(parents=True, exist_ok=True)

    def delete(self, key: str) -> bool:
        """Delete a blob or directory. Returns True if something was removed."""
        target = self.path(key)
        if target.is_dir():
            shutil.rmtree(target)
            return True
        if target.exists():
            target.unlink()
            return True
        return False
