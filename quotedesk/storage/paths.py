"""
Path generation for quote file storage.
All paths are relative to FILE_STORE_ROOT.
"""

import hashlib
import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def file_hash(file_bytes: bytes) -> str:
    """SHA-256 hash of file content."""
    return hashlib.sha256(file_bytes).hexdigest()


def safe_filename(file_name: str) -> str:
    """Strip directories and anything outside [A-Za-z0-9._-]."""
    name = Path(file_name or "").name
    cleaned = _UNSAFE_CHARS.sub("_", name).strip("._")
    return cleaned or "document"


def quote_file_path(quote_id: str, file_id: str, file_name: str) -> str:
    """Path for an uploaded customer document."""
    return f"{quote_id}/files/{file_id}/{safe_filename(file_name)}"


def ensure_parent_dirs(store_root: str, relative_path: str) -> Path:
    """Create parent directories and return the full absolute path."""
    full_path = Path(store_root) / relative_path
    full_path.parent.mkdir(parents=True, exist_ok=True)
    return full_path
