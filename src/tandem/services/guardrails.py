import logging
import re
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

ATTRIBUTION_PATH = "/api/attribution"
MIN_SNIPPET_LINES = 3
_CODE_BLOCK_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class Attribution:
    repositories: list[str] = field(default_factory=list)
    limit_hit: bool = False


@dataclass(frozen=True)
class AnnotationResult:
    text: str
    code_blocks: int
    duration_ms: int


class Guardrails(Protocol):
    async def search_attribution(self, snippet: str) -> Attribution: ...


class HttpGuardrails:
    def __init__(
        self,
        endpoint: str,
        token: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._transport = transport

    async def search_attribution(self, snippet: str) -> Attribution:
        headers = {"Authorization": f"token {self.token}"} if self.token else {}
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
            response = await client.post(
                self.endpoint + ATTRIBUTION_PATH, json={"snippet": snippet}, headers=headers
            )
            response.raise_for_status()
            data = response.json()
        return Attribution(
            repositories=[str(name) for name in data.get("repositories", [])],
            limit_hit=bool(data.get("limit_hit", False)),
        )


def _summary(attribution: Attribution) -> str:
    count = len(attribution.repositories)
    more = "+" if attribution.limit_hit else ""
    names = ", ".join(attribution.repositories[:5])
    return f"\n> ⚠️ Guardrails: this code matches {count}{more} public repositories ({names})\n"


async def annotate_attribution(guardrails: Guardrails, text: str) -> AnnotationResult:
    started = time.monotonic()
    parts: list[str] = []
    position = 0
    checked = 0
    for match in _CODE_BLOCK_RE.finditer(text):
        snippet = match.group(1)
        parts.append(text[position : match.end()])
        position = match.end()
        if len(snippet.strip().splitlines()) < MIN_SNIPPET_LINES:
            continue
        checked += 1
        attribution = await guardrails.search_attribution(snippet)
        if attribution.repositories:
            parts.append(_summary(attribution))
    parts.append(text[position:])
    duration_ms = int((time.monotonic() - started) * 1000)
    return AnnotationResult(text="".join(parts), code_blocks=checked, duration_ms=duration_ms)
