import re

from tandem.recipes.base import Recipe, RecipeContext
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import InteractionMessage

_SEARCH_COMMAND_RE = re.compile(r"^/s(earch)?\s+", re.IGNORECASE)


class ContextSearch(Recipe):
    id = "context-search"
    requires_model = False

    async def get_interaction(self, human_input: str, context: RecipeContext) -> Interaction | None:
        query = _SEARCH_COMMAND_RE.sub("", human_input.strip()).strip()
        if not query:
            return None
        if context.codebase_context is None:
            answer = "Codebase search is not available."
        else:
            results = await context.codebase_context.search(query)
            if results:
                lines = [f"Search results for `{query}`:", ""]
                for result in results:
                    line = f"- `{result.file_name}`"
                    if result.preview:
                        line += f": {result.preview}"
                    lines.append(line)
                answer = "\n".join(lines)
            else:
                answer = f"No results found for `{query}`."
        return Interaction(
            human_message=InteractionMessage(speaker="human", text=query, display_text=human_input),
            assistant_message=InteractionMessage(speaker="assistant", text=answer, display_text=answer),
        )
