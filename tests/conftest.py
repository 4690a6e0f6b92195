import asyncio
import os

os.environ.setdefault("APP_ENV", "test")

import pytest
from fastapi.testclient import TestClient

from localchat.api.main import create_app
from localchat.core.exceptions import BackendError
from localchat.storage.store import ChatStore
from localchat.streaming.registry import StreamRegistry


class FakeBackend:
    """Scripted ``TokenBackend``: yields ``pieces`` and records what happened."""

    def __init__(self, pieces=("Hello", " world"), fail_before_first=False, fail_after=None):
        self.pieces = list(pieces)
        self.fail_before_first = fail_before_first
        self.fail_after = fail_after
        self.calls = []
        self.aborted = False
        self.exhausted = False

    def stream(self, turns):
        self.calls.append(list(turns))

        async def _stream():
            try:
                if self.fail_before_first:
                    raise BackendError("model offline")
                for index, piece in enumerate(self.pieces):
                    if self.fail_after is not None and index == self.fail_after:
                        raise BackendError("model crashed")
                    yield piece
                    await asyncio.sleep(0)
                self.exhausted = True
            except GeneratorExit:
                self.aborted = True
                raise

        return _stream()


@pytest.fixture
def store():
    chat_store = ChatStore("sqlite://")
    yield chat_store
    chat_store.close()


@pytest.fixture
def registry():
    return StreamRegistry()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(store, registry, backend):
    app = create_app(store=store, backend=backend, registry=registry)
    with TestClient(app) as test_client:
        yield test_client
