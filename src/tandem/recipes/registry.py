from typing import TYPE_CHECKING, Iterable

from tandem.recipes.base import Recipe

if TYPE_CHECKING:
    from tandem.recipes.my_prompt import MyPromptStore


class RecipeRegistry:
    def __init__(self, recipes: Iterable[Recipe] = ()):
        self.recipes: dict[str, Recipe] = {}
        for recipe in recipes:
            self.register(recipe)

    def register(self, recipe: Recipe) -> None:
        if not recipe.id:
            raise ValueError(f"Recipe {recipe.__class__.__name__} has no id")
        self.recipes[recipe.id] = recipe

    def get(self, recipe_id: str) -> Recipe | None:
        return self.recipes.get(recipe_id)

    def list_ids(self) -> list[str]:
        return sorted(self.recipes.keys())


def default_registry(my_prompts: "MyPromptStore | None" = None) -> RecipeRegistry:
    from tandem.recipes.chat_question import ChatQuestion
    from tandem.recipes.context_search import ContextSearch
    from tandem.recipes.my_prompt import MyPromptRecipe
    from tandem.recipes.next_questions import NextQuestions

    return RecipeRegistry(
        [ChatQuestion(), ContextSearch(), NextQuestions(), MyPromptRecipe(my_prompts)]
    )
