"""
Blob storage for uploaded quote documents.
Local filesystem under FILE_STORE_ROOT (volume mount).
"""

import shutil
from pathlib import Path
from typing import Optional

import structlog

from quotedesk.config import settings
from quotedesk.storage.paths import ensure_parent_dirs

logger = structlog.get_logger(__name__)


class FileStore:
    """
    Save and load quote files.
    All paths are relative to FILE_STORE_ROOT.
    """

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.FILE_STORE_ROOT)
        self.root.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, relative_path: str, data: bytes) -> str:
        """Save raw bytes. Returns the relative path."""
        full_path = ensure_parent_dirs(str(self.root), relative_path)
        full_path.write_bytes(data)
        logger.info("file_saved", path=relative_path, size_bytes=len(data))
        return relative_path

    def load_bytes(self, relative_path: str) -> bytes:
        full_path = self.root / relative_path
        if not full_path.exists():
            raise FileNotFoundError(f"File not found: {relative_path}")
        return full_path.read_bytes()

    def exists(self, relative_path: str) -> bool:
        return (self.root / relative_path).exists()

    def delete(self, relative_path: str) -> bool:
        """Delete a file. Returns True if it existed."""
        full_path = self.root / relative_path
        if full_path.exists():
            full_path.unlink()
            logger.info("file_deleted", path=relative_path)
            return True
        return False

    def delete_quote_files(self, quote_id: str) -> int:
        """Delete every stored file of a quote. Returns count deleted."""
        quote_dir = self.root / quote_id
        if not quote_dir.exists():
            return 0
        count = sum(1 for p in quote_dir.rglob("*") if p.is_file())
        shutil.rmtree(quote_dir)
        logger.info("quote_files_deleted", quote_id=quote_id, count=count)
        return count
