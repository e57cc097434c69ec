from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

MediaKind = Literal["image", "video"]


@dataclass(frozen=True)
class IncomingMessage:
    text: str = ""
    media_urls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OutgoingMessage:
    kind: Literal["text", "image", "video"]
    content: str


class ChatTransport(Protocol):
    async def send(self, message: str) -> None:
        ...

    async def send_media(self, url: str, kind: MediaKind = "image") -> None:
        ...

    async def prompt(self, timeout_seconds: float) -> IncomingMessage | None:
        ...


class BufferedTransport:
    """
    Collects everything sent to the user in order. Replies to ``prompt`` are
    taken from a queue that callers (or tests) feed ahead of time; an empty
    queue behaves like a user who never answers.
    """

    def __init__(self, replies: list[IncomingMessage] | None = None) -> None:
        self.messages: list[OutgoingMessage] = []
        self._replies: asyncio.Queue[IncomingMessage] = asyncio.Queue()
        for reply in replies or []:
            self._replies.put_nowait(reply)

    async def send(self, message: str) -> None:
        self.messages.append(OutgoingMessage(kind="text", content=message))

    async def send_media(self, url: str, kind: MediaKind = "image") -> None:
        self.messages.append(OutgoingMessage(kind=kind, content=url))

    async def prompt(self, timeout_seconds: float) -> IncomingMessage | None:
        try:
            return await asyncio.wait_for(self._replies.get(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return None

    def feed(self, reply: IncomingMessage) -> None:
        self._replies.put_nowait(reply)

    @property
    def texts(self) -> list[str]:
        return [m.content for m in self.messages if m.kind == "text"]

    @property
    def media(self) -> list[str]:
        return [m.content for m in self.messages if m.kind != "text"]


async def safe_send(transport: ChatTransport, message: str) -> bool:
    try:
        await transport.send(message)
        return True
    except Exception:
        logger.warning("Failed to deliver message to user", exc_info=True)
        return False


async def safe_send_media(transport: ChatTransport, url: str, kind: MediaKind = "image") -> bool:
    try:
        await transport.send_media(url, kind)
        return True
    except Exception:
        logger.warning("Failed to deliver %s to user", kind, exc_info=True)
        return False
