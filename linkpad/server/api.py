from __future__ import annotations

import asyncio
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from linkpad.app import config
from linkpad.app.note_sync import NoteSync
from linkpad.app.reconciler import Prober
from linkpad.app.session import EditorSession
from .adapters.gist import GistDocumentStore
from .adapters.local import LocalDocumentStore
from .adapters.store import AuthenticationError, DocumentStore, Identity, StoreError
from .probe import LinkProber, validate_url
from .state import SessionRegistry, session_registry

logger = logging.getLogger(__name__)

WEB_ROOT = Path(__file__).resolve().parent.parent / "webserver"

_STORE: Optional[DocumentStore] = None
_PROBER: Optional[Prober] = None
_REGISTRY: SessionRegistry = session_registry


def set_document_store(store: Optional[DocumentStore]) -> None:
    """Replace the note store (None rebuilds it from config on next use)."""
    global _STORE
    _STORE = store


def set_prober(prober: Optional[Prober]) -> None:
    global _PROBER
    _PROBER = prober


def set_session_registry(registry: SessionRegistry) -> None:
    global _REGISTRY
    _REGISTRY = registry


def _get_store() -> DocumentStore:
    global _STORE
    if _STORE is None:
        backend = config.load_store_backend()
        if backend == "gist":
            _STORE = GistDocumentStore(config.load_github_api())
        else:
            _STORE = LocalDocumentStore(config.load_local_store_path())
        logger.info(f"Using {_STORE.name} note store")
    return _STORE


def _get_prober() -> Prober:
    global _PROBER
    if _PROBER is None:
        _PROBER = LinkProber(
            config.load_probe_timeout(),
            client_errors_reachable=config.load_client_errors_reachable(),
        )
    return _PROBER


# ===== Session tokens =====
JWT_SECRET = os.getenv("JWT_SECRET") or secrets.token_urlsafe(32)
JWT_ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


class AuthModels:
    class SetupRequest(BaseModel):
        username: str = Field(..., min_length=3, max_length=50)
        password: str = Field(..., min_length=8)

    class LoginRequest(BaseModel):
        username: Optional[str] = None
        password: Optional[str] = None
        token: Optional[str] = None

    class TokenResponse(BaseModel):
        access_token: str
        token_type: str = "bearer"
        owner: str

    class UserInfo(BaseModel):
        owner: str
        store: str


def _create_token(data: dict, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def _issue_session(identity: Identity) -> dict:
    sid = _REGISTRY.open(identity)
    token = _create_token(
        {"sub": identity.owner, "sid": sid},
        timedelta(hours=config.load_session_hours()),
    )
    return {"access_token": token, "token_type": "bearer", "owner": identity.owner}


def _decode_session(token: Optional[str]) -> tuple[Optional[str], Optional[Identity]]:
    """Return (sid, identity) for a valid, still-open session token."""
    if not token:
        return None, None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None, None
    sid = payload.get("sid")
    identity = _REGISTRY.get(sid)
    if identity is None or identity.owner != payload.get("sub"):
        return None, None
    return sid, identity


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Identity]:
    """Signed-in identity, or None when the request carries no valid session."""
    if not credentials:
        return None
    _sid, identity = _decode_session(credentials.credentials)
    return identity


async def require_identity(identity: Optional[Identity] = Depends(get_current_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized. Please sign in.")
    return identity


class CheckLinkPayload(BaseModel):
    url: Optional[str] = None


class NotePayload(BaseModel):
    content: Optional[str] = None


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    yield
    if isinstance(_PROBER, LinkProber):
        await _PROBER.aclose()
    if _STORE is not None:
        await _STORE.aclose()


app = FastAPI(title="Linkpad", version="0.1.0", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1", "http://localhost"],
    allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost)(:\d+)?$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/static", StaticFiles(directory=str(WEB_ROOT / "static")), name="static")
templates = Jinja2Templates(directory=str(WEB_ROOT / "templates"))


def get_app() -> FastAPI:
    return app


@app.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "editor.html",
        {"store_backend": _get_store().name},
    )


@app.get("/api/health")
def health() -> dict:
    return {"ok": True}


# ===== Authentication Endpoints =====

@app.post("/auth/setup", response_model=AuthModels.TokenResponse)
def auth_setup(payload: AuthModels.SetupRequest) -> dict:
    """First-time account creation for the local note store."""
    store = _get_store()
    if not isinstance(store, LocalDocumentStore):
        raise HTTPException(status_code=400, detail="Account setup is only available for the local store")
    try:
        identity = store.register(payload.username.strip(), payload.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return _issue_session(identity)


@app.post("/auth/login", response_model=AuthModels.TokenResponse)
async def auth_login(payload: AuthModels.LoginRequest) -> dict:
    try:
        identity = await _get_store().authenticate(payload.model_dump())
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    logger.info(f"Signed in {identity.owner}")
    return _issue_session(identity)


@app.post("/auth/logout")
def auth_logout(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    sid, _identity = _decode_session(credentials.credentials if credentials else None)
    return {"ok": _REGISTRY.close(sid)}


@app.get("/auth/me", response_model=AuthModels.UserInfo)
def auth_me(identity: Identity = Depends(require_identity)) -> dict:
    return {"owner": identity.owner, "store": _get_store().name}


# ===== Links =====

@app.post("/api/check-link")
async def check_link(payload: CheckLinkPayload) -> dict:
    url = (payload.url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="URL is required")
    if validate_url(url) is None:
        raise HTTPException(status_code=400, detail="Invalid URL format")
    result = await _get_prober()(url)
    return result.to_dict()


# ===== Note persistence =====

@app.get("/api/note")
async def read_note(identity: Identity = Depends(require_identity)) -> dict:
    result = await NoteSync(_get_store(), identity).load()
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error or "Failed to read note")
    return {"documentId": result.document_id, "content": result.content}


async def _write_note(payload: NotePayload, identity: Identity) -> dict:
    if payload.content is None:
        raise HTTPException(status_code=400, detail="Content is required")
    result = await NoteSync(_get_store(), identity).save(payload.content)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error or "Failed to save note")
    return {"documentId": result.document_id, "content": result.content}


@app.post("/api/note")
async def save_note(payload: NotePayload, identity: Identity = Depends(require_identity)) -> dict:
    return await _write_note(payload, identity)


@app.patch("/api/note")
async def update_note(payload: NotePayload, identity: Identity = Depends(require_identity)) -> dict:
    return await _write_note(payload, identity)


# ===== Editor socket =====

def _parse_selection(raw: object) -> Optional[tuple[int, int]]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return None
    try:
        start, end = int(raw[0]), int(raw[1])
    except (TypeError, ValueError):
        return None
    return (start, end) if 0 <= start <= end else None


def _handle_editor_message(session: EditorSession, message: dict) -> Optional[dict]:
    """Apply one client message; returns an error payload for bad input."""
    kind = message.get("type") if isinstance(message, dict) else None
    if kind == "edit":
        content = message.get("content")
        if not isinstance(content, str):
            return {"type": "error", "detail": "Edit requires text content"}
        seq = message.get("seq")
        session.edit(
            content,
            seq if isinstance(seq, int) else None,
            _parse_selection(message.get("selection")),
        )
    elif kind == "caret":
        session.move_caret(_parse_selection(message.get("selection")))
    elif kind == "check_all":
        session.spawn(session.check_all())
    elif kind == "save":
        session.spawn(session.save())
    elif kind == "load":
        session.spawn(session.load())
    elif kind == "dismiss":
        session.dismiss_message()
    else:
        return {"type": "error", "detail": f"Unknown message type: {kind}"}
    return None


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        payload = await outbox.get()
        try:
            await websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError):
            return


@app.websocket("/ws/editor")
async def editor_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    await websocket.accept()
    sid, identity = _decode_session(token)
    outbox: asyncio.Queue = asyncio.Queue()
    session = EditorSession(
        _get_prober(),
        _get_store(),
        identity,
        listener=outbox.put_nowait,
        debounce=config.load_debounce_seconds(),
        pacing=config.load_pacing_seconds(),
    )
    sender = asyncio.create_task(_pump(websocket, outbox))
    outbox.put_nowait(session.state_payload())
    if identity is not None and sid and _REGISTRY.claim_first_load(sid):
        session.spawn(session.load())
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                outbox.put_nowait({"type": "error", "detail": "Messages must be JSON objects"})
                continue
            error = _handle_editor_message(session, message)
            if error is not None:
                outbox.put_nowait(error)
    except WebSocketDisconnect:
        pass
    finally:
        # Timers and spawned actions stop; probes already in flight finish on their own.
        session.close()
        sender.cancel()
