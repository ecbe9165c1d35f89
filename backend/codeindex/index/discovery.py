"""Project file discovery.

Walks a project root and reports the source files the index should cover,
together with a content hash of each.  Ignore rules use gitignore syntax
(via ``pathspec``) and come from three places, combined:

* the built-in list in ``SyncSettings.ignore_patterns``;
* ``<root>/.gitignore``;
* ``<root>/.codeindexignore``.

The index's own state directory is always skipped.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pathspec

from codeindex.config import SyncSettings

from .fingerprint import content_hash
from .symbols import detect_language

logger = logging.getLogger(__name__)

IGNORE_FILES = (".gitignore", ".codeindexignore")

# Bytes inspected when deciding whether a file is binary
_BINARY_SNIFF = 8192


@dataclass(frozen=True)
class DiscoveredFile:
    """A candidate file found on disk."""

    path: str           # POSIX path relative to the project root
    abs_path: Path
    content_hash: str
    size: int
    language: str


def load_ignore_spec(root: Path, patterns: Iterable[str]) -> pathspec.PathSpec:
    """Build the combined ignore spec for *root*."""
    lines: List[str] = list(patterns)
    for name in IGNORE_FILES:
        ignore_file = root / name
        if ignore_file.is_file():
            try:
                lines.extend(ignore_file.read_text(encoding="utf-8", errors="replace").splitlines())
            except OSError as exc:
                logger.warning("[Discovery] cannot read %s: %s", ignore_file, exc)
    return pathspec.PathSpec.from_lines("gitignore", lines)


def scan_project(
    root: Path,
    settings: Optional[SyncSettings] = None,
) -> Dict[str, DiscoveredFile]:
    """Return every indexable file under *root*, keyed by relative path.

    Files are skipped when they match an ignore rule, are larger than
    ``max_file_bytes``, have no supported language, look binary, or cannot
    be read.
    """
    settings = settings or SyncSettings()
    root = Path(root).resolve()
    spec = load_ignore_spec(root, settings.ignore_patterns)
    found: Dict[str, DiscoveredFile] = {}
    skipped = 0

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"

        # prune ignored directories in place so os.walk never descends
        dirnames[:] = sorted(
            d for d in dirnames
            if d != settings.state_dir_name
            and not spec.match_file(f"{prefix}{d}/")
        )

        for filename in sorted(filenames):
            rel_path = f"{prefix}{filename}"
            if spec.match_file(rel_path):
                continue
            language = detect_language(rel_path)
            if not language:
                continue

            abs_path = Path(dirpath) / filename
            try:
                size = abs_path.stat().st_size
                if size > settings.max_file_bytes:
                    logger.debug("[Discovery] %s: %d bytes exceeds limit, skipped", rel_path, size)
                    skipped += 1
                    continue
                data = abs_path.read_bytes()
            except OSError as exc:
                logger.warning("[Discovery] cannot read %s: %s", rel_path, exc)
                skipped += 1
                continue

            if b"\0" in data[:_BINARY_SNIFF]:
                skipped += 1
                continue

            found[rel_path] = DiscoveredFile(
                path=rel_path,
                abs_path=abs_path,
                content_hash=content_hash(data),
                size=len(data),
                language=language,
            )

    logger.info("[Discovery] %s: %d files (%d skipped)", root, len(found), skipped)
    return found
