"""
Utilities for handling file paths and URIs.
"""

import os
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin, urlparse

from pathvalidate import sanitize_filename


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def safe_component(name: str, fallback: str = "item") -> str:
    """Sanitizes a source item key so it can be used as a directory name."""
    cleaned = sanitize_filename(name.strip(), platform="auto").strip(". ")
    return cleaned or fallback


def is_remote(uri: str) -> bool:
    return urlparse(uri).scheme in ("http", "https")


def local_path(uri: str) -> str:
    """Strips a ``file://`` scheme so the URI can be opened as a filesystem path."""
    return uri[len("file://"):] if uri.startswith("file://") else uri


def resolve_uri(base_uri: str, reference: str) -> str:
    """
    Resolves a playlist reference against the URI of the document listing it.

    Works for both HTTP(S) URLs and local file paths.
    """
    reference = reference.strip()
    if not base_uri or urlparse(reference).scheme in ("http", "https", "file"):
        return reference
    if is_remote(base_uri):
        return urljoin(base_uri, reference)
    if os.path.isabs(reference):
        return reference
    base_path = local_path(base_uri)
    return os.path.normpath(os.path.join(os.path.dirname(base_path), reference))


def resolve_local(path: Optional[str], base_dir: Path) -> Optional[Path]:
    """Resolves a path from a job file relative to that file's directory."""
    if not path:
        return None
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate
