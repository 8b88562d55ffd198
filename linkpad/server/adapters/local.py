from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerificationError

from .store import NOTE_FILENAME, AuthenticationError, DocumentStore, Identity, StoreError

password_hasher = PasswordHasher()


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            username TEXT PRIMARY KEY,
            password_hash TEXT NOT NULL,
            configured_at TEXT
        );
        CREATE TABLE IF NOT EXISTS documents (
            doc_id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner TEXT NOT NULL,
            name TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            updated REAL,
            UNIQUE(owner, name)
        );
        """
    )


class LocalDocumentStore(DocumentStore):
    """SQLite-backed note store with password accounts, for single-host use."""

    name = "local"

    def __init__(self, db_path: str | Path) -> None:
        in_memory = str(db_path) == ":memory:"
        self.db_path = Path(db_path) if in_memory else Path(db_path).expanduser()
        if not in_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._lock = RLock()
        with self._lock:
            _ensure_schema(self._conn)
            self._conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Local note store error: {exc}") from exc
            return cursor

    async def find(self, identity: Identity) -> Optional[str]:
        row = self._execute(
            "SELECT doc_id FROM documents WHERE owner = ? AND name = ?",
            (identity.owner, NOTE_FILENAME),
        ).fetchone()
        return str(row[0]) if row else None

    async def read(self, identity: Identity, document_id: str) -> str:
        row = self._execute(
            "SELECT content FROM documents WHERE doc_id = ? AND owner = ?",
            (int(document_id), identity.owner),
        ).fetchone()
        if not row:
            raise StoreError(f"Note {document_id} not found")
        return row[0] or ""

    async def create(self, identity: Identity, content: str) -> str:
        try:
            cursor = self._execute(
                "INSERT INTO documents (owner, name, content, updated) VALUES (?, ?, ?, ?)",
                (identity.owner, NOTE_FILENAME, content or "", time.time()),
            )
        except StoreError as exc:
            raise StoreError(f"Note already exists for {identity.owner}") from exc
        return str(cursor.lastrowid)

    async def update(self, identity: Identity, document_id: str, content: str) -> str:
        cursor = self._execute(
            "UPDATE documents SET content = ?, updated = ? WHERE doc_id = ? AND owner = ?",
            (content or "", time.time(), int(document_id), identity.owner),
        )
        if cursor.rowcount == 0:
            raise StoreError(f"Note {document_id} not found")
        return document_id

    def has_account(self, username: str) -> bool:
        row = self._execute("SELECT 1 FROM accounts WHERE username = ?", (username,)).fetchone()
        return row is not None

    def register(self, username: str, password: str) -> Identity:
        """First-time account setup. Refuses to overwrite an existing account."""
        if self.has_account(username):
            raise AuthenticationError("Account already configured")
        self._execute(
            "INSERT INTO accounts (username, password_hash, configured_at) VALUES (?, ?, ?)",
            (username, password_hasher.hash(password), datetime.now(timezone.utc).isoformat()),
        )
        return Identity(owner=username, credential=username)

    async def authenticate(self, payload: dict) -> Identity:
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        if not username or not password:
            raise AuthenticationError("Username and password are required")
        row = self._execute(
            "SELECT password_hash FROM accounts WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            raise AuthenticationError("Invalid username or password")
        try:
            password_hasher.verify(row[0], password)
        except VerificationError:
            raise AuthenticationError("Invalid username or password")
        return Identity(owner=username, credential=username)

    async def aclose(self) -> None:
        with self._lock:
            self._conn.close()
