from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from tandem.chat.multiplexer import ResponseMultiplexer
    from tandem.context.codebase import CodebaseContext
    from tandem.transcript.interaction import Interaction


@dataclass(frozen=True)
class EditorSelection:
    file_name: str
    selected_text: str


class EditorState(Protocol):
    def get_selection(self) -> EditorSelection | None: ...


class IntentDetector(Protocol):
    async def is_codebase_context_required(self, query: str) -> bool: ...


@dataclass
class RecipeContext:
    editor: EditorState | None
    intent_detector: IntentDetector | None
    codebase_context: CodebaseContext | None
    response_multiplexer: ResponseMultiplexer
    first_interaction: bool = False


class Recipe(ABC):
    id: str = ""
    # Recipes that answer locally skip the model round-trip.
    requires_model: bool = True
    # Recipes that may be augmented with plugin-sourced context.
    uses_plugins: bool = False

    @abstractmethod
    async def get_interaction(self, human_input: str, context: RecipeContext) -> Interaction | None: ...
