from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

# Logical name of the one reserved note document each owner has.
NOTE_FILENAME = "linkpad-note.md"
NOTE_DESCRIPTION = "Linkpad - Note Storage"


class StoreError(RuntimeError):
    pass


class AuthenticationError(StoreError):
    pass


@dataclass(frozen=True)
class Identity:
    owner: str
    # Opaque to everything except the store that issued it.
    credential: str = ""


class DocumentStore(ABC):
    """One reserved document per owner: lookup, read, create, update."""

    name = "abstract"

    @abstractmethod
    async def find(self, identity: Identity) -> Optional[str]:
        """Return the owner's note document id, or None when it does not exist."""

    @abstractmethod
    async def read(self, identity: Identity, document_id: str) -> str:
        ...

    @abstractmethod
    async def create(self, identity: Identity, content: str) -> str:
        ...

    @abstractmethod
    async def update(self, identity: Identity, document_id: str, content: str) -> str:
        ...

    @abstractmethod
    async def authenticate(self, payload: dict) -> Identity:
        """Resolve sign-in fields into an identity or raise AuthenticationError."""

    async def aclose(self) -> None:
        return None
