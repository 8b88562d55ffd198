from __future__ import annotations

import logging
from typing import Optional

import httpx

from .store import (
    NOTE_DESCRIPTION,
    NOTE_FILENAME,
    AuthenticationError,
    DocumentStore,
    Identity,
    StoreError,
)

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GISTS_PER_PAGE = 100
MAX_GIST_PAGES = 10
UNEXPECTED_RESPONSE = "GitHub API returned an unexpected response"


class GistDocumentStore(DocumentStore):
    """Keeps each user's note in a private GitHub gist holding NOTE_FILENAME."""

    name = "gist"

    def __init__(
        self,
        api_base: str = GITHUB_API,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.http = httpx.AsyncClient(base_url=self.api_base, timeout=timeout, transport=transport)

    @staticmethod
    def _headers(identity: Identity) -> dict[str, str]:
        if not identity.credential:
            raise AuthenticationError("Missing GitHub access token")
        return {
            "Authorization": f"Bearer {identity.credential}",
            "Accept": "application/vnd.github+json",
        }

    async def _request(self, method: str, url: str, identity: Identity, **kwargs) -> httpx.Response:
        try:
            resp = await self.http.request(method, url, headers=self._headers(identity), **kwargs)
        except httpx.HTTPError as exc:
            raise StoreError(f"GitHub API unreachable: {exc}") from exc
        if resp.status_code == 401:
            raise AuthenticationError("GitHub rejected the access token")
        if resp.is_error:
            detail = resp.text[:200] if resp.text else ""
            logger.warning(f"GitHub API {method} {url} -> {resp.status_code} {detail}")
            raise StoreError(f"GitHub API error: {resp.status_code}")
        return resp

    async def _request_json(self, method: str, url: str, identity: Identity, **kwargs) -> object:
        resp = await self._request(method, url, identity, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            logger.warning(f"GitHub API {method} {url} returned non-JSON body")
            raise StoreError(UNEXPECTED_RESPONSE) from exc

    @staticmethod
    def _gist_id(gist: object) -> str:
        gist_id = gist.get("id") if isinstance(gist, dict) else None
        if not isinstance(gist_id, str) or not gist_id:
            raise StoreError(UNEXPECTED_RESPONSE)
        return gist_id

    async def find(self, identity: Identity) -> Optional[str]:
        for page in range(1, MAX_GIST_PAGES + 1):
            gists = await self._request_json(
                "GET", "/gists", identity, params={"per_page": GISTS_PER_PAGE, "page": page}
            )
            if not isinstance(gists, list):
                raise StoreError(UNEXPECTED_RESPONSE)
            for gist in gists:
                files = gist.get("files") if isinstance(gist, dict) else None
                if isinstance(files, dict) and NOTE_FILENAME in files:
                    return self._gist_id(gist)
            if len(gists) < GISTS_PER_PAGE:
                break
        return None

    async def read(self, identity: Identity, document_id: str) -> str:
        gist = await self._request_json("GET", f"/gists/{document_id}", identity)
        if not isinstance(gist, dict):
            raise StoreError(UNEXPECTED_RESPONSE)
        files = gist.get("files") or {}
        entry = files.get(NOTE_FILENAME) if isinstance(files, dict) else None
        if not isinstance(entry, dict):
            return ""
        return entry.get("content") or ""

    async def create(self, identity: Identity, content: str) -> str:
        body = {
            "description": NOTE_DESCRIPTION,
            "public": False,
            "files": {NOTE_FILENAME: {"content": content or ""}},
        }
        return self._gist_id(await self._request_json("POST", "/gists", identity, json=body))

    async def update(self, identity: Identity, document_id: str, content: str) -> str:
        body = {
            "description": NOTE_DESCRIPTION,
            "files": {NOTE_FILENAME: {"content": content or ""}},
        }
        gist = await self._request_json("PATCH", f"/gists/{document_id}", identity, json=body)
        if isinstance(gist, dict) and "id" not in gist:
            return document_id
        return self._gist_id(gist)

    async def authenticate(self, payload: dict) -> Identity:
        token = (payload.get("token") or "").strip()
        if not token:
            raise AuthenticationError("A GitHub access token is required")
        pending = Identity(owner="", credential=token)
        user = await self._request_json("GET", "/user", pending)
        login = user.get("login") if isinstance(user, dict) else None
        if not isinstance(login, str) or not login:
            raise AuthenticationError("GitHub did not return a user login")
        return Identity(owner=login, credential=token)

    async def aclose(self) -> None:
        await self.http.aclose()
