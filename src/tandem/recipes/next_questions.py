from tandem.prompts import Prompts
from tandem.recipes.base import Recipe, RecipeContext
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import InteractionMessage


class NextQuestions(Recipe):
    id = "next-questions"

    async def get_interaction(self, human_input: str, context: RecipeContext) -> Interaction | None:
        question = human_input.strip() or "the previous question"
        prompt = Prompts().next_questions.format(question=question)
        return Interaction(
            human_message=InteractionMessage(speaker="human", text=prompt),
            assistant_message=InteractionMessage(speaker="assistant", prefix=""),
        )
