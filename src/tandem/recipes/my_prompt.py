import asyncio
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from common.jsonio import atomic_write_json, load_json
from tandem.prompts import Premade
from tandem.recipes.base import Recipe, RecipeContext
from tandem.recipes.chat_question import NUM_CODE_RESULTS, selection_messages
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import ContextMessage, InteractionMessage

logger = logging.getLogger(__name__)


class MyPromptContext(BaseModel):
    codebase: bool = False
    exclude_selection: bool = False
    none: bool = False


class MyPrompt(BaseModel):
    prompt: str
    context: MyPromptContext = Field(default_factory=MyPromptContext)


class MyPromptsFile(BaseModel):
    premade: Premade | None = None
    recipes: dict[str, MyPrompt] = Field(default_factory=dict)


EXAMPLE_PROMPTS = MyPromptsFile(
    recipes={
        "Explain selection": MyPrompt(
            prompt="Explain what the selected code does in simple terms. Assume the audience is a beginner."
        ),
        "Generate unit tests": MyPrompt(
            prompt="Write unit tests for the selected code. Cover the edge cases and name each test after the behaviour it checks."
        ),
        "Find related code": MyPrompt(
            prompt="Which parts of the codebase call or depend on the selected code?",
            context=MyPromptContext(codebase=True),
        ),
    }
)


class MyPromptStore:
    """Named prompts and preamble overrides the user keeps in a JSON file.

    The file looks like::

        {
          "premade": {"actions": "...", "rules": "...", "answer": "..."},
          "recipes": {"Name": {"prompt": "...", "context": {"codebase": true}}}
        }

    A missing or invalid file reads as empty.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.data = MyPromptsFile()

    async def refresh(self) -> None:
        raw = await asyncio.to_thread(load_json, self.path)
        if raw is None:
            self.data = MyPromptsFile()
            return
        try:
            self.data = MyPromptsFile.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid custom prompts file {self.path}: {e}")
            self.data = MyPromptsFile()

    @property
    def premade(self) -> Premade | None:
        return self.data.premade

    def list_names(self) -> list[str]:
        return sorted(self.data.recipes)

    def find(self, name: str) -> str | None:
        prompt = self.data.recipes.get(name)
        return prompt.prompt if prompt is not None else None

    def find_by_text(self, text: str) -> MyPrompt | None:
        for prompt in self.data.recipes.values():
            if prompt.prompt.strip() == text:
                return prompt
        return None

    async def add_example_file(self) -> None:
        if self.path.exists():
            raise FileExistsError(f"{self.path} already exists")
        data = EXAMPLE_PROMPTS.model_dump(mode="json", exclude_none=True)
        await asyncio.to_thread(atomic_write_json, self.path, data)
        await self.refresh()
        logger.info(f"Wrote example custom prompts to {self.path}")


class MyPromptRecipe(Recipe):
    """Runs a prompt from the user's custom prompts file."""

    id = "my-prompt"

    def __init__(self, store: MyPromptStore | None = None):
        self.store = store

    async def get_interaction(self, human_input: str, context: RecipeContext) -> Interaction | None:
        text = human_input.strip()
        if not text:
            return None
        prompt = self.store.find_by_text(text) if self.store is not None else None
        settings = prompt.context if prompt is not None else MyPromptContext()
        return Interaction(
            human_message=InteractionMessage(speaker="human", text=text, display_text=text),
            assistant_message=InteractionMessage(speaker="assistant"),
            full_context=await self._get_context_messages(text, settings, context),
        )

    async def _get_context_messages(
        self, text: str, settings: MyPromptContext, context: RecipeContext
    ) -> list[ContextMessage]:
        if settings.none:
            return []
        messages: list[ContextMessage] = []
        if settings.codebase and context.codebase_context is not None:
            messages.extend(await context.codebase_context.get_context_messages(text, NUM_CODE_RESULTS))
        if not settings.exclude_selection:
            messages.extend(selection_messages(context.editor))
        return messages
