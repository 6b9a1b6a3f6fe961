import os
import tempfile

# main.py creates its upload root and connects to MongoDB at import time
os.environ.setdefault("UPLOAD_ROOT", tempfile.mkdtemp(prefix="media-uploads-"))
os.environ.pop("DATABASE_URL", None)

import io
import itertools
import re

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

import main
from uploads import UploadGate, load_policies


class FakeField:
    """Stand-in for an UploadFile: declared headers plus an async byte stream."""

    def __init__(self, payload: bytes, content_type, filename):
        self._buffer = io.BytesIO(payload)
        self.content_type = content_type
        self.filename = filename
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        self.reads += 1
        return self._buffer.read(size)

    @property
    def consumed(self) -> int:
        return self._buffer.tell()


class FakeDatabase:
    """In-memory replacement for the helpers in database.py."""

    def __init__(self):
        self.collections = {}
        self._ids = itertools.count(1)

    def _docs(self, name):
        return self.collections.setdefault(name, [])

    @classmethod
    def _matches(cls, doc, filter_dict):
        for key, value in (filter_dict or {}).items():
            if key == "$or":
                if not any(cls._matches(doc, clause) for clause in value):
                    return False
            elif key.startswith("$"):
                raise NotImplementedError(key)
            elif isinstance(value, dict) and "$regex" in value:
                flags = re.IGNORECASE if "i" in value.get("$options", "") else 0
                field = doc.get(key)
                candidates = field if isinstance(field, list) else [field]
                if not any(
                    isinstance(c, str) and re.search(value["$regex"], c, flags) for c in candidates
                ):
                    return False
            elif doc.get(key) != value:
                return False
        return True

    def create_document(self, collection_name, data):
        payload = data.model_dump() if hasattr(data, "model_dump") else dict(data)
        docs = self._docs(collection_name)
        if collection_name == "video" and any(d["video_id"] == payload["video_id"] for d in docs):
            raise DuplicateKeyError("duplicate video_id")
        payload["_id"] = str(next(self._ids))
        docs.append(payload)
        return payload["_id"]

    def get_documents(self, collection_name, filter_dict=None, limit=None, skip=0, sort=None):
        docs = [dict(d) for d in self._docs(collection_name) if self._matches(d, filter_dict)]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d: d.get(field), reverse=direction < 0)
        docs = docs[skip:]
        return docs[:limit] if limit else docs

    def count_documents(self, collection_name, filter_dict=None):
        return len([d for d in self._docs(collection_name) if self._matches(d, filter_dict)])

    def update_document(self, collection_name, filter_dict, changes=None, inc=None):
        for doc in self._docs(collection_name):
            if self._matches(doc, filter_dict):
                doc.update(changes or {})
                for key, amount in (inc or {}).items():
                    doc[key] = doc.get(key, 0) + amount
                return dict(doc)
        return None


@pytest.fixture()
def fake_db(monkeypatch):
    fake = FakeDatabase()
    for name in ("create_document", "get_documents", "count_documents", "update_document"):
        monkeypatch.setattr(main, name, getattr(fake, name))
    return fake


@pytest.fixture()
def upload_root(tmp_path, monkeypatch):
    monkeypatch.delenv("IMAGE_MAX_BYTES", raising=False)
    monkeypatch.delenv("VIDEO_MAX_BYTES", raising=False)
    return tmp_path


@pytest.fixture()
def gate(upload_root):
    return UploadGate(load_policies(str(upload_root)))


@pytest.fixture()
def client(monkeypatch, fake_db, gate):
    monkeypatch.setattr(main, "gate", gate)
    return TestClient(main.app)


@pytest.fixture()
def make_field():
    return FakeField
