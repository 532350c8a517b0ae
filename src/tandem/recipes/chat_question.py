import logging

from tandem.prompts import Prompts
from tandem.recipes.base import EditorState, Recipe, RecipeContext
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import ContextFile, ContextMessage, InteractionMessage

logger = logging.getLogger(__name__)

NUM_CODE_RESULTS = 4


def selection_messages(editor: EditorState | None) -> list[ContextMessage]:
    selection = editor.get_selection() if editor is not None else None
    if selection is None or not selection.selected_text.strip():
        return []
    prompts = Prompts()
    return [
        ContextMessage(
            speaker="human",
            text=prompts.selection_context.format(
                file_name=selection.file_name, content=selection.selected_text
            ),
            file=ContextFile(file_name=selection.file_name, source="selection"),
        ),
        ContextMessage(speaker="assistant", text=prompts.context_ack),
    ]


class ChatQuestion(Recipe):
    id = "chat-question"
    uses_plugins = True

    async def get_interaction(self, human_input: str, context: RecipeContext) -> Interaction | None:
        text = human_input.strip()
        if not text:
            return None
        full_context = await self._get_context_messages(text, context)
        return Interaction(
            human_message=InteractionMessage(speaker="human", text=text, display_text=text),
            assistant_message=InteractionMessage(speaker="assistant"),
            full_context=full_context,
        )

    async def _get_context_messages(self, text: str, context: RecipeContext) -> list[ContextMessage]:
        messages: list[ContextMessage] = []
        codebase_context = context.codebase_context
        if codebase_context is not None:
            required = True
            if context.intent_detector is not None:
                required = await context.intent_detector.is_codebase_context_required(text)
            if required:
                messages.extend(await codebase_context.get_context_messages(text, NUM_CODE_RESULTS))

        messages.extend(selection_messages(context.editor))
        logger.debug(f"chat-question gathered {len(messages) // 2} context snippets")
        return messages
