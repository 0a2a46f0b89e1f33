"""Messaging transport adapter.

The host only needs four things from the chat network: send text, list a
group's participants, read a group's display metadata, and enumerate the
groups the account belongs to. ``BridgeTransport`` gets them from an
external messaging bridge over HTTP; inbound messages arrive the other way
through the webhook in ``warden.server``.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class GroupMetadata(BaseModel):
    jid: str
    subject: str = ""
    participants: list[str] = Field(default_factory=list)


class Transport(Protocol):
    async def send(self, chat_jid: str, text: str) -> None: ...

    async def participants(self, chat_jid: str) -> list[str]: ...

    async def group_metadata(self, chat_jid: str) -> GroupMetadata: ...

    async def list_groups(self) -> list[GroupMetadata]: ...


class TransportError(RuntimeError):
    """The bridge could not be reached or rejected a request."""


class BridgeTransport:
    """Async HTTP client for the messaging bridge."""

    def __init__(self, base_url: str, *, token: str | None = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        headers = {"User-Agent": "Warden/0.1.0"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self._timeout
        )
        logger.info("Bridge transport started: %s", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Bridge transport not started")
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        return resp

    async def send(self, chat_jid: str, text: str) -> None:
        await self._request("POST", "/send", json={"chatJid": chat_jid, "text": text})
        logger.info("Message sent to %s (%d chars)", chat_jid, len(text))

    async def group_metadata(self, chat_jid: str) -> GroupMetadata:
        resp = await self._request("GET", f"/groups/{quote(chat_jid, safe='')}")
        data = resp.json()
        return GroupMetadata(
            jid=data.get("jid", chat_jid),
            subject=data.get("subject", ""),
            participants=[
                p["id"] if isinstance(p, dict) else p for p in data.get("participants", [])
            ],
        )

    async def participants(self, chat_jid: str) -> list[str]:
        return (await self.group_metadata(chat_jid)).participants

    async def list_groups(self) -> list[GroupMetadata]:
        resp = await self._request("GET", "/groups")
        return [
            GroupMetadata(jid=g["jid"], subject=g.get("subject", ""))
            for g in resp.json().get("groups", [])
        ]
