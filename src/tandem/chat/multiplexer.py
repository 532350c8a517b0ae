"""Topic-keyed fan-out of one streaming response.

Subscribers register for a topic before the first chunk is published. Text
outside any topic marker goes to ``DEFAULT_TOPIC``; text wrapped in
``<topic>...</topic>`` goes to that topic when someone subscribed to it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class ResponseSubscriber:
    on_response: Callable[[str], Awaitable[None]]
    on_turn_complete: Callable[[], Awaitable[None]]


def _partial_tag_length(buffer: str, tags: list[str]) -> int:
    """Length of the longest suffix of buffer that may start one of tags."""
    longest = 0
    for tag in tags:
        for size in range(min(len(tag) - 1, len(buffer)), 0, -1):
            if buffer.endswith(tag[:size]):
                longest = max(longest, size)
                break
    return longest


class ResponseMultiplexer:
    DEFAULT_TOPIC = "Assistant"

    def __init__(self):
        self._subs: dict[str, ResponseSubscriber] = {}
        self._buffer = ""
        self._topic = self.DEFAULT_TOPIC
        self._tail: asyncio.Future | None = None
        self._completed = False

    def sub(self, topic: str, subscriber: ResponseSubscriber) -> None:
        self._subs[topic] = subscriber

    async def publish(self, response: str) -> None:
        if self._completed:
            logger.debug("Dropping chunk published after turn completion")
            return
        previous = self._tail

        async def deliver() -> None:
            if previous is not None:
                await asyncio.wait({previous})
            await self._route(response)

        self._tail = asyncio.ensure_future(deliver())
        await self._tail

    async def notify_turn_complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        if self._tail is not None:
            await asyncio.wait({self._tail})
        if self._buffer:
            rest, self._buffer = self._buffer, ""
            await self._emit(self._topic, rest)
        for topic, subscriber in list(self._subs.items()):
            try:
                await subscriber.on_turn_complete()
            except Exception:
                logger.exception(f"Turn completion handler for topic {topic!r} failed")

    async def _route(self, chunk: str) -> None:
        self._buffer += chunk
        extra = [t for t in self._subs if t != self.DEFAULT_TOPIC]
        while self._buffer:
            if self._topic == self.DEFAULT_TOPIC:
                tags = {f"<{t}>": t for t in extra}
            else:
                tags = {f"</{self._topic}>": self.DEFAULT_TOPIC}
            found = [(self._buffer.find(tag), tag) for tag in tags if tag in self._buffer]
            if found:
                index, tag = min(found)
                await self._emit(self._topic, self._buffer[:index])
                self._buffer = self._buffer[index + len(tag):]
                self._topic = tags[tag]
                continue
            hold = _partial_tag_length(self._buffer, list(tags))
            ready = self._buffer[: len(self._buffer) - hold]
            self._buffer = self._buffer[len(self._buffer) - hold:]
            await self._emit(self._topic, ready)
            break

    async def _emit(self, topic: str, text: str) -> None:
        if not text:
            return
        subscriber = self._subs.get(topic)
        if subscriber is None:
            return
        try:
            await subscriber.on_response(text)
        except Exception:
            logger.exception(f"Response handler for topic {topic!r} failed")
