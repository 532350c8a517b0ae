from tandem.recipes.base import EditorSelection, EditorState, IntentDetector, Recipe, RecipeContext
from tandem.recipes.chat_question import ChatQuestion
from tandem.recipes.context_search import ContextSearch
from tandem.recipes.next_questions import NextQuestions
from tandem.recipes.registry import RecipeRegistry, default_registry

__all__ = [
    "ChatQuestion",
    "ContextSearch",
    "EditorSelection",
    "EditorState",
    "IntentDetector",
    "NextQuestions",
    "Recipe",
    "RecipeContext",
    "RecipeRegistry",
    "default_registry",
]
