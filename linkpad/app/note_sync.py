from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional

import httpx

from linkpad.server.adapters.store import DocumentStore, Identity, StoreError

logger = logging.getLogger(__name__)

SUCCESS_CLEAR_SECONDS = 3.0
ERROR_CLEAR_SECONDS = 5.0


@dataclass(frozen=True)
class NoteMessage:
    kind: Literal["success", "error"]
    text: str

    def to_dict(self) -> dict:
        return {"type": self.kind, "text": self.text}


@dataclass(frozen=True)
class SyncResult:
    ok: bool
    content: Optional[str] = None
    document_id: Optional[str] = None
    error: Optional[str] = None
    auth_required: bool = False


class NoteSync:
    """Save/load the signed-in user's single note and keep banner state.

    Store and transport failures end up in :attr:`message`; nothing raised by
    the store leaves :meth:`save` or :meth:`load`.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: Optional[Identity] = None,
        *,
        listener: Optional[Callable[[], None]] = None,
        success_clear: float = SUCCESS_CLEAR_SECONDS,
        error_clear: float = ERROR_CLEAR_SECONDS,
    ) -> None:
        self.store = store
        self.identity = identity
        self.saving = False
        self.loading = False
        self.message: Optional[NoteMessage] = None
        self._listener = listener
        self._success_clear = success_clear
        self._error_clear = error_clear
        self._clear_timer: Optional[asyncio.TimerHandle] = None

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    @property
    def busy(self) -> bool:
        return self.saving or self.loading

    async def save(self, content: str) -> SyncResult:
        if self.identity is None:
            return self._auth_required("Please sign in to save your note")
        if self.busy:
            return SyncResult(ok=False, error="Another note operation is in progress")
        self.saving = True
        self._set_message(None)
        error = None
        try:
            document_id = await self.store.find(self.identity)
            if document_id is None:
                document_id = await self.store.create(self.identity, content)
            else:
                document_id = await self.store.update(self.identity, document_id, content)
        except (StoreError, httpx.HTTPError) as exc:
            logger.error(f"Error saving note for {self.identity.owner}: {exc}")
            error = str(exc) or "Failed to save note"
        finally:
            self.saving = False
        if error is not None:
            return self._failed(error)
        self._set_message(NoteMessage("success", "Note saved successfully!"))
        return SyncResult(ok=True, content=content, document_id=document_id)

    async def load(self) -> SyncResult:
        if self.identity is None:
            return self._auth_required("Please sign in to load your note")
        if self.busy:
            return SyncResult(ok=False, error="Another note operation is in progress")
        self.loading = True
        self._set_message(None)
        error = None
        document_id = content = None
        try:
            document_id = await self.store.find(self.identity)
            if document_id is not None:
                content = await self.store.read(self.identity, document_id)
        except (StoreError, httpx.HTTPError) as exc:
            logger.error(f"Error loading note for {self.identity.owner}: {exc}")
            error = str(exc) or "Failed to load note"
        finally:
            self.loading = False
        if error is not None:
            return self._failed(error)
        if document_id is None:
            self._set_message(NoteMessage("success", "No saved note found. Save your note first."))
            return SyncResult(ok=True, content=None)
        self._set_message(NoteMessage("success", "Note loaded successfully!"))
        return SyncResult(ok=True, content=content, document_id=document_id)

    def dismiss(self) -> None:
        self._set_message(None)

    def close(self) -> None:
        self._cancel_clear()

    def _auth_required(self, text: str) -> SyncResult:
        self._set_message(NoteMessage("error", text))
        return SyncResult(ok=False, error=text, auth_required=True)

    def _failed(self, text: str) -> SyncResult:
        self._set_message(NoteMessage("error", text))
        return SyncResult(ok=False, error=text)

    def _set_message(self, message: Optional[NoteMessage]) -> None:
        self._cancel_clear()
        self.message = message
        if message is not None:
            delay = self._success_clear if message.kind == "success" else self._error_clear
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._clear_timer = loop.call_later(delay, self._expire)
        self._notify()

    def _expire(self) -> None:
        self._clear_timer = None
        self.message = None
        self._notify()

    def _cancel_clear(self) -> None:
        if self._clear_timer is not None:
            self._clear_timer.cancel()
            self._clear_timer = None

    def _notify(self) -> None:
        if self._listener is None:
            return
        try:
            self._listener()
        except Exception:
            logger.exception("Note sync listener failed")
