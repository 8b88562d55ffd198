"""Per-connection editor state: buffer, link statuses, note sync.

Each user action goes through one method that updates :class:`EditorState`
and pushes the resulting payloads to ``listener``. Render payloads carry the
``seq`` of the text they were built from so the page can drop a render that
is older than what the user has typed since.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from linkpad.app.highlight import render, restore_selection
from linkpad.app.links import LinkStatus, StatusTable, extract_urls
from linkpad.app.note_sync import ERROR_CLEAR_SECONDS, SUCCESS_CLEAR_SECONDS, NoteSync, SyncResult
from linkpad.app.reconciler import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_PACING_SECONDS, Prober, Reconciler
from linkpad.server.adapters.store import DocumentStore, Identity

logger = logging.getLogger(__name__)


@dataclass
class EditorState:
    content: str = ""
    selection: Optional[tuple[int, int]] = None
    seq: int = 0
    has_loaded_note: bool = False


class EditorSession:
    def __init__(
        self,
        prober: Prober,
        store: DocumentStore,
        identity: Optional[Identity] = None,
        *,
        listener: Optional[Callable[[dict], None]] = None,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        pacing: float = DEFAULT_PACING_SECONDS,
        success_clear: float = SUCCESS_CLEAR_SECONDS,
        error_clear: float = ERROR_CLEAR_SECONDS,
    ) -> None:
        self.state = EditorState()
        self._listener = listener
        self.table = StatusTable()
        self.reconciler = Reconciler(
            prober,
            lambda: self.state.content,
            self.table,
            debounce=debounce,
            pacing=pacing,
            listener=self._on_link_change,
        )
        self.sync = NoteSync(
            store,
            identity,
            listener=self._emit_state,
            success_clear=success_clear,
            error_clear=error_clear,
        )
        self._tasks: set[asyncio.Task] = set()

    @property
    def content(self) -> str:
        return self.state.content

    @property
    def authenticated(self) -> bool:
        return self.sync.authenticated

    def edit(self, content: str, seq: Optional[int] = None, selection: Optional[tuple[int, int]] = None) -> None:
        """The user changed the buffer."""
        self.state.content = content or ""
        self.state.seq = seq if seq is not None else self.state.seq + 1
        self.state.selection = selection
        self.reconciler.text_changed()
        self._emit(self.render_payload())

    def move_caret(self, selection: Optional[tuple[int, int]]) -> None:
        self.state.selection = selection

    async def check_all(self) -> int:
        return await self.reconciler.check_all()

    async def save(self) -> SyncResult:
        return await self.sync.save(self.state.content)

    async def load(self) -> SyncResult:
        self.state.has_loaded_note = True
        result = await self.sync.load()
        if result.ok and result.content is not None:
            self.state.content = result.content
            self.state.seq += 1
            self.state.selection = None
            self._emit(self.render_payload(replace=True))
            self.reconciler.text_changed()
        return result

    def dismiss_message(self) -> None:
        self.sync.dismiss()

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        """Run an action in the background so the receive loop stays responsive."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Editor action failed: {exc!r}")

    def render_payload(self, replace: bool = False) -> dict:
        rendering = render(self.state.content, self.table)
        return {
            "type": "render",
            "seq": self.state.seq,
            "replace": replace,
            "html": str(rendering.to_html()),
            "selection": restore_selection(rendering, self.state.selection),
            "links": [self._link_payload(node.url) for node in rendering.links()],
        }

    def state_payload(self) -> dict:
        message = self.sync.message
        return {
            "type": "state",
            "authenticated": self.sync.authenticated,
            "owner": self.sync.identity.owner if self.sync.identity else None,
            "isChecking": self.reconciler.is_checking,
            "isSaving": self.sync.saving,
            "isLoading": self.sync.loading,
            "hasLinks": bool(extract_urls(self.state.content)),
            "message": message.to_dict() if message else None,
        }

    def _link_payload(self, url: str) -> dict:
        record = self.table.get(url)
        if record is None:
            return {"url": url, "status": "unchecked"}
        return record.to_dict()

    def _on_link_change(self, record: Optional[LinkStatus]) -> None:
        if record is None:
            self._emit_state()
        else:
            self._emit(self.render_payload())

    def _emit_state(self) -> None:
        self._emit(self.state_payload())

    def _emit(self, payload: dict) -> None:
        if self._listener is not None:
            self._listener(payload)

    async def aclose(self) -> None:
        self.close()
        await self.reconciler.drain()

    def close(self) -> None:
        """Stop timers and spawned actions; probes already in flight run to completion."""
        self.reconciler.close()
        self.sync.close()
        for task in list(self._tasks):
            task.cancel()
