"""Warden Server — FastAPI surface over the host.

- ``POST /webhook/messages``: the messaging bridge pushes inbound events
  here. When a webhook secret is configured, requests must carry
  ``Authorization: Bearer <secret>``.
- ``GET /health``: loop and registry status.

The lifespan starts the host (store, transport, polling loops) and stops
it on shutdown.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Response
from pydantic import BaseModel, ConfigDict, Field

from warden.config import WardenConfig
from warden.host import WardenHost
from warden.models import NewMessage

logger = logging.getLogger(__name__)


class InboundMessage(BaseModel):
    """Inbound event as posted by the bridge."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    chat_jid: str = Field(alias="chatJid")
    sender: str
    sender_name: str = Field(default="", alias="senderName")
    content: str = ""
    timestamp: str
    chat_name: str | None = Field(default=None, alias="chatName")

    def to_message(self) -> NewMessage:
        return NewMessage(
            id=self.id,
            chat_jid=self.chat_jid,
            sender=self.sender,
            sender_name=self.sender_name or self.sender.split("@", 1)[0],
            content=self.content,
            timestamp=self.timestamp,
        )


def _authorized(expected: str | None, authorization: str) -> bool:
    if not expected:
        return True
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(token.encode(), expected.encode())


def create_app(config: WardenConfig, host: WardenHost | None = None) -> FastAPI:
    """Create the FastAPI application around a (possibly injected) host."""
    warden = host or WardenHost(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await warden.start()
        yield
        await warden.stop()

    app = FastAPI(
        title="Warden",
        version="0.1.0",
        description="Trust-and-sandbox host for a shared personal assistant",
        lifespan=lifespan,
    )
    app.state.host = warden

    @app.post("/webhook/messages")
    async def receive_message(
        event: InboundMessage, authorization: str = Header(default="")
    ) -> Response:
        if not _authorized(config.server.webhook_secret, authorization):
            logger.warning("Rejected inbound message %s: bad credentials", event.id)
            return Response(status_code=401, content="Unauthorized")

        stored = await warden.ingest(event.to_message(), event.chat_name)
        logger.debug("Inbound message %s in %s (stored=%s)", event.id, event.chat_jid, stored)
        return Response(status_code=200, content="ok")

    @app.get("/health")
    async def health():
        return {"status": "ok", "assistant": config.assistant.name, **warden.status()}

    return app
