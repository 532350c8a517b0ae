import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from tandem.prompts import Prompts
from tandem.transcript.messages import ContextFile, ContextMessage

logger = logging.getLogger(__name__)

IGNORED_DIRS = {
    ".venv",
    "venv",
    ".git",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "dist",
    "build",
    ".eggs",
    ".tandem",
}

MAX_FILES = 2000
MAX_FILE_BYTES = 200_000
SNIPPET_CHARS = 3000
_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{2,}")


class CodebaseContext(Protocol):
    def get_codebase(self) -> str | None: ...

    async def get_context_messages(self, query: str, num_results: int = 4) -> list[ContextMessage]: ...

    async def search(self, query: str, num_results: int = 10) -> list["SearchResult"]: ...

    def get_embedding_search_errors(self) -> str: ...

    def check_embeddings_connection(self) -> bool: ...


@dataclass(frozen=True)
class SearchResult:
    file_name: str
    score: int
    preview: str


def query_terms(query: str) -> list[str]:
    return sorted({word.lower() for word in _WORD_RE.findall(query)})


class KeywordCodebaseContext:
    """Ranks files under a root directory by query term occurrences."""

    def __init__(self, root_path: str | Path, codebase: str | None = None):
        self.root_path = Path(root_path)
        self.codebase = codebase or self.root_path.resolve().name

    def get_codebase(self) -> str | None:
        return self.codebase

    def get_embedding_search_errors(self) -> str:
        return ""

    def check_embeddings_connection(self) -> bool:
        return False

    async def search(self, query: str, num_results: int = 10) -> list[SearchResult]:
        return await asyncio.to_thread(self._search, query, num_results)

    async def get_context_messages(self, query: str, num_results: int = 4) -> list[ContextMessage]:
        results = await self.search(query, num_results)
        snippets = await asyncio.to_thread(self._read_snippets, results)
        prompts = Prompts()
        messages: list[ContextMessage] = []
        for result, content in snippets:
            file = ContextFile(file_name=result.file_name, repo_name=self.codebase, source="keyword")
            messages.append(
                ContextMessage(
                    speaker="human",
                    text=prompts.code_context.format(file_name=result.file_name, content=content),
                    file=file,
                )
            )
            messages.append(ContextMessage(speaker="assistant", text=prompts.context_ack))
        return messages

    def _read_snippets(self, results: list[SearchResult]) -> list[tuple[SearchResult, str]]:
        snippets = []
        for result in results:
            try:
                content = (self.root_path / result.file_name).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping {result.file_name}: {e}")
                continue
            snippets.append((result, content[:SNIPPET_CHARS]))
        return snippets

    def _search(self, query: str, num_results: int) -> list[SearchResult]:
        terms = query_terms(query)
        if not terms:
            return []
        results: list[SearchResult] = []
        for path in self._iter_files():
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            lowered = text.lower()
            name = path.name.lower()
            score = sum(lowered.count(term) for term in terms)
            score += sum(5 for term in terms if term in name)
            if score == 0:
                continue
            rel = str(path.relative_to(self.root_path))
            results.append(SearchResult(file_name=rel, score=score, preview=_preview(text, terms)))
        results.sort(key=lambda r: (-r.score, r.file_name))
        return results[:num_results]

    def _iter_files(self):
        count = 0
        for path in sorted(self.root_path.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(self.root_path)
            if any(part in IGNORED_DIRS or part.endswith(".egg-info") for part in rel.parts):
                continue
            if path.stat().st_size > MAX_FILE_BYTES:
                continue
            yield path
            count += 1
            if count >= MAX_FILES:
                break


def _preview(text: str, terms: list[str]) -> str:
    for line in text.splitlines():
        lowered = line.lower()
        if any(term in lowered for term in terms):
            return line.strip()[:120]
    return ""
