import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Sequence

import httpx
import litellm

from common import llm
from tandem.transcript.messages import Message

logger = logging.getLogger(__name__)

ABORT_MESSAGES = {"aborted", "socket hang up"}


class ChatError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: str = "server",
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.kind = kind

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ChatError":
        if isinstance(exc, ChatError):
            return exc
        if isinstance(exc, asyncio.CancelledError):
            return cls("aborted", kind="abort")
        status_code = getattr(exc, "status_code", None)
        if not isinstance(status_code, int):
            status_code = None
        message = str(exc) or exc.__class__.__name__
        if message in ABORT_MESSAGES:
            return cls(message, status_code, kind="abort")
        if isinstance(
            exc,
            (litellm.APIConnectionError, litellm.Timeout, httpx.TransportError, ConnectionError),
        ):
            return cls(message, status_code, kind="network")
        return cls(message, status_code)


def is_abort_error(error: ChatError) -> bool:
    return error.kind == "abort" or error.message in ABORT_MESSAGES


def is_network_error(error: ChatError) -> bool:
    return error.kind == "network"


def is_auth_error(error: ChatError) -> bool:
    return error.status_code is not None and 400 <= error.status_code <= 410


def to_api_messages(messages: Sequence[Message]) -> list[dict[str, str]]:
    # Chat models continue from the last human turn; an empty assistant slot is dropped.
    return [m.to_api() for m in messages if m.speaker == "human" or m.text]


class ChatClient:
    def __init__(
        self,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 1000,
        api_base: str | None = None,
        api_key: str | None = None,
        extra_headers: dict[str, str] | None = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.extra_headers = extra_headers or {}

    def _params(self) -> dict:
        params: dict = {}
        if self.api_base:
            params["api_base"] = self.api_base
        if self.api_key:
            params["api_key"] = self.api_key
        if self.extra_headers:
            params["extra_headers"] = self.extra_headers
        return params

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[str]:
        try:
            async for text in llm.stream_text(
                model=self.model,
                messages=to_api_messages(messages),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                **self._params(),
            ):
                yield text
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ChatError.from_exception(e) from e

    async def complete(self, messages: Sequence[Message], max_tokens: int | None = None) -> str:
        try:
            return await llm.complete_text(
                model=self.model,
                messages=to_api_messages(messages),
                temperature=0.0,
                max_tokens=max_tokens or self.max_tokens,
                **self._params(),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ChatError.from_exception(e) from e


class CompletionTask:
    """Drives one streaming call on the running event loop.

    Chunks are handed to ``on_chunk`` in arrival order. Exactly one of
    ``on_complete`` or ``on_error`` runs unless the task is cancelled first.
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        on_chunk: Callable[[str], Awaitable[None]],
        on_complete: Callable[[], Awaitable[None]],
        on_error: Callable[[ChatError], Awaitable[None]],
    ):
        self._chunks = chunks
        self._on_chunk = on_chunk
        self._on_complete = on_complete
        self._on_error = on_error
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            async for chunk in self._chunks:
                await self._on_chunk(chunk)
        except asyncio.CancelledError:
            logger.debug("Completion task cancelled")
            raise
        except Exception as e:
            await self._on_error(ChatError.from_exception(e))
        else:
            await self._on_complete()
        finally:
            aclose = getattr(self._chunks, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Closing the chat stream failed", exc_info=True)

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        await asyncio.wait({self._task})
