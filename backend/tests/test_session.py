"""Tests for session persistence."""
import json

import pytest

from codeindex.errors import SessionCorruption
from codeindex.index.session import (
    SCHEMA_VERSION,
    FileRecord,
    Session,
    SessionStore,
    commit_record,
)


def _record(path: str = "a.py", ids=("c1", "c2")) -> FileRecord:
    return FileRecord(path=path, content_hash="h-" + path, chunk_ids=list(ids), language="python")


class TestSessionStore:
    def test_path_under_state_dir(self, tmp_path):
        store = SessionStore(tmp_path)
        assert store.path == tmp_path / ".codeindex" / "session.json"
        assert not store.exists()

    def test_save_and_load(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.new(provider_id="fake:v1")
        commit_record(session, _record("a.py"), "a.py")
        store.save(session)

        loaded = store.load()
        assert loaded.project_root == str(tmp_path)
        assert loaded.provider_id == "fake:v1"
        assert loaded.schema_version == SCHEMA_VERSION
        assert loaded.files["a.py"].chunk_ids == ["c1", "c2"]
        assert loaded.chunk_ids() == {"c1", "c2"}

    def test_save_replaces_atomically(self, tmp_path):
        store = SessionStore(tmp_path)
        session = store.new()
        store.save(session)
        commit_record(session, _record("b.py"), "b.py")
        store.save(session)
        # no temp files left behind
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name != "session.json"]
        assert leftovers == []
        assert "b.py" in store.load().files

    def test_delete(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(store.new())
        store.delete()
        assert not store.exists()
        store.delete()  # idempotent

    def test_missing_file_raises_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SessionStore(tmp_path).load()

    def test_custom_state_dir(self, tmp_path):
        store = SessionStore(tmp_path, state_dir_name=".idx")
        assert store.path.parent.name == ".idx"


class TestSessionCorruption:
    def _write(self, tmp_path, content: str) -> SessionStore:
        store = SessionStore(tmp_path)
        store.path.parent.mkdir(parents=True)
        store.path.write_text(content)
        return store

    def test_invalid_json(self, tmp_path):
        store = self._write(tmp_path, "{not json")
        with pytest.raises(SessionCorruption) as exc_info:
            store.load()
        assert exc_info.value.status_code == 409
        assert "init_session" in exc_info.value.message

    def test_not_an_object(self, tmp_path):
        with pytest.raises(SessionCorruption):
            self._write(tmp_path, "[1, 2]").load()

    def test_missing_schema_version(self, tmp_path):
        with pytest.raises(SessionCorruption):
            self._write(tmp_path, json.dumps({"project_root": "/x", "files": {}})).load()

    def test_newer_schema_version(self, tmp_path):
        body = {"project_root": "/x", "schema_version": SCHEMA_VERSION + 1, "files": {}}
        with pytest.raises(SessionCorruption, match="newer"):
            self._write(tmp_path, json.dumps(body)).load()

    def test_invalid_record(self, tmp_path):
        body = {
            "project_root": "/x",
            "schema_version": SCHEMA_VERSION,
            "files": {"a.py": {"path": "a.py", "chunk_ids": "not-a-list"}},
        }
        with pytest.raises(SessionCorruption):
            self._write(tmp_path, json.dumps(body)).load()

    def test_unknown_fields_are_ignored(self, tmp_path):
        body = {
            "project_root": "/x",
            "schema_version": SCHEMA_VERSION,
            "files": {},
            "future_field": {"x": 1},
        }
        session = self._write(tmp_path, json.dumps(body)).load()
        assert isinstance(session, Session)


class TestCommitRecord:
    def test_replace_and_remove(self):
        session = Session(project_root="/x")
        commit_record(session, _record("a.py", ["c1"]), "a.py")
        commit_record(session, _record("a.py", ["c2"]), "a.py")
        assert session.files["a.py"].chunk_ids == ["c2"]
        commit_record(session, None, "a.py")
        assert session.files == {}
        commit_record(session, None, "missing.py")
