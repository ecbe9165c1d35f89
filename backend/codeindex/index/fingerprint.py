"""Content fingerprints and deterministic identifiers."""
import hashlib
from pathlib import Path
from typing import Tuple, Union


def content_hash(data: Union[bytes, str]) -> str:
    """SHA-256 hex digest of *data* (str is hashed as UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def chunk_id(file_path: str, byte_range: Tuple[int, int], chunk_hash: str) -> str:
    """Deterministic chunk ID formatted as a UUID string.

    The same file path, range and content always produce the same ID, so
    re-upserting an unchanged chunk overwrites rather than duplicates it.
    Vector stores such as Qdrant only accept UUIDs or integers as point IDs.
    """
    h = hashlib.sha256()
    h.update(file_path.encode("utf-8"))
    h.update(b"\0")
    h.update(f"{byte_range[0]}:{byte_range[1]}".encode("ascii"))
    h.update(b"\0")
    h.update(chunk_hash.encode("ascii"))
    hex_str = h.hexdigest()
    return (
        f"{hex_str[0:8]}-{hex_str[8:12]}-{hex_str[12:16]}-"
        f"{hex_str[16:20]}-{hex_str[20:32]}"
    )


def collection_id(project_root: Union[str, Path], prefix: str = "cix_") -> str:
    """Stable per-project collection name derived from the root path."""
    digest = hashlib.sha256(str(project_root).encode("utf-8")).hexdigest()
    return f"{prefix}{digest[:16]}"
