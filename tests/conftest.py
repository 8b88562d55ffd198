from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from linkpad.app.links import LinkState
from linkpad.app.reconciler import ProbeResult
from linkpad.server.adapters.store import AuthenticationError, DocumentStore, Identity, StoreError


class FakeProber:
    """Records calls; answers from ``results`` (default reachable)."""

    def __init__(self, results: Optional[dict] = None, delay: float = 0.0) -> None:
        self.results = results or {}
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str) -> ProbeResult:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.results.get(url, ProbeResult(LinkState.REACHABLE, http_status=200))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1


class MemoryStore(DocumentStore):
    name = "memory"

    def __init__(self) -> None:
        self.documents: dict[str, tuple[str, str]] = {}
        self.calls: list[str] = []
        self.fail_with: Optional[Exception] = None
        self.passwords: dict[str, str] = {}

    def _record(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_with is not None:
            raise self.fail_with

    async def find(self, identity: Identity) -> Optional[str]:
        self._record("find")
        for doc_id, (owner, _content) in self.documents.items():
            if owner == identity.owner:
                return doc_id
        return None

    async def read(self, identity: Identity, document_id: str) -> str:
        self._record("read")
        return self.documents[document_id][1]

    async def create(self, identity: Identity, content: str) -> str:
        self._record("create")
        doc_id = f"doc-{len(self.documents) + 1}"
        self.documents[doc_id] = (identity.owner, content)
        return doc_id

    async def update(self, identity: Identity, document_id: str, content: str) -> str:
        self._record("update")
        if document_id not in self.documents:
            raise StoreError("missing")
        self.documents[document_id] = (identity.owner, content)
        return document_id

    async def authenticate(self, payload: dict) -> Identity:
        username = payload.get("username")
        if not username or self.passwords.get(username) != payload.get("password"):
            raise AuthenticationError("Invalid username or password")
        return Identity(owner=username, credential=f"token-{username}")


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def identity() -> Identity:
    return Identity(owner="octocat", credential="secret-token")
