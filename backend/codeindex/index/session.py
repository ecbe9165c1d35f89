"""Durable per-project index state.

The :class:`Session` records, for every indexed file, the whole-file content
hash and the IDs of the chunks stored for it.  It is the source of truth for
"what is currently indexed" and is written after every committed file, so a
crash loses at most the file that was in flight.

Persistence is a JSON document under ``<project>/.codeindex/session.json``,
replaced atomically (write to a temp file, fsync, ``os.replace``).
"""
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from codeindex.errors import SessionCorruption

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SESSION_FILENAME = "session.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(BaseModel):
    """What is stored in the index for one file."""

    path: str
    content_hash: str
    chunk_ids: List[str] = Field(default_factory=list)
    last_synced_at: datetime = Field(default_factory=_utcnow)
    language: str = ""


class Session(BaseModel):
    """Indexed state of one project."""

    project_root: str
    schema_version: int = SCHEMA_VERSION
    provider_id: str = ""
    files: Dict[str, FileRecord] = Field(default_factory=dict)

    def chunk_ids(self) -> set[str]:
        """Every chunk ID referenced by a file record."""
        return {cid for record in self.files.values() for cid in record.chunk_ids}


class SessionStore:
    """Loads and saves the :class:`Session` of one project.

    Args:
        project_root:   Project directory.
        state_dir_name: Directory under the root that holds index state.
    """

    def __init__(self, project_root: Path, state_dir_name: str = ".codeindex") -> None:
        self._root = Path(project_root)
        self._path = self._root / state_dir_name / SESSION_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def new(self, provider_id: str = "") -> Session:
        return Session(project_root=str(self._root), provider_id=provider_id)

    def load(self) -> Session:
        """Read the persisted session.

        Raises:
            SessionCorruption: If the file is unreadable, malformed, or was
                               written with an unsupported schema version.
        """
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise
        except (OSError, ValueError) as exc:
            raise SessionCorruption(str(self._path), f"cannot read JSON ({exc})") from exc

        if not isinstance(raw, dict):
            raise SessionCorruption(str(self._path), "top-level value is not an object")

        version = raw.get("schema_version")
        if not isinstance(version, int):
            raise SessionCorruption(str(self._path), "missing schema_version")
        if version > SCHEMA_VERSION:
            raise SessionCorruption(
                str(self._path),
                f"schema_version {version} is newer than supported {SCHEMA_VERSION}",
            )
        if version < SCHEMA_VERSION:
            raise SessionCorruption(
                str(self._path), f"no migration from schema_version {version}",
            )

        try:
            session = Session.model_validate(raw)
        except ValidationError as exc:
            raise SessionCorruption(str(self._path), f"invalid content ({exc.error_count()} errors)") from exc

        logger.debug(
            "[SessionStore] loaded %s: %d files", self._path, len(session.files),
        )
        return session

    def save(self, session: Session) -> None:
        """Atomically replace the persisted session."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = session.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".session-", suffix=".tmp", dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self._path.unlink(missing_ok=True)


def commit_record(session: Session, record: Optional[FileRecord], path: str) -> None:
    """Replace (or, with ``record=None``, remove) the record for *path*."""
    if record is None:
        session.files.pop(path, None)
    else:
        session.files[path] = record
