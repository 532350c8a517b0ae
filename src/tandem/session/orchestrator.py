import asyncio
import logging
import re
from typing import Callable, Iterable, Sequence

from common.ids import new_chat_id
from tandem.chat.formatting import extract_suggestions, reformat_bot_message
from tandem.chat.multiplexer import ResponseMultiplexer, ResponseSubscriber
from tandem.chat.transport import (
    ChatClient,
    ChatError,
    CompletionTask,
    is_abort_error,
    is_auth_error,
    is_network_error,
)
from tandem.config import TandemConfig
from tandem.context.codebase import CodebaseContext
from tandem.plugins.api import PluginRunResult, choose_data_sources, run_plugin_functions
from tandem.plugins.catalog import PluginCatalog
from tandem.prompts import Premade, get_preamble
from tandem.recipes.base import EditorState, IntentDetector, RecipeContext
from tandem.recipes.my_prompt import MyPromptStore
from tandem.recipes.registry import RecipeRegistry
from tandem.services.auth import AuthProvider
from tandem.services.guardrails import Guardrails, annotate_attribution
from tandem.session.history import HistoryStore
from tandem.session.hooks import SessionHooks
from tandem.session.idle import IdleCallback, IdleScheduler
from tandem.tokens import TokenCounter, get_token_counter, max_prompt_tokens
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import Message
from tandem.transcript.transcript import Transcript

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "Cannot execute multiple recipes. Please wait for the current recipe to finish."
NETWORK_ERROR_MESSAGE = "Tandem could not respond due to network error."
SUGGESTIONS_RECIPE_ID = "next-questions"
MY_PROMPT_RECIPE_ID = "my-prompt"
CUSTOM_RECIPE_ACTIONS = ("add", "get", "menu")

_RESET_RE = re.compile(r"^/r(eset)?\s*$", re.IGNORECASE)
_OPEN_RE = re.compile(r"^/o(pen)?(\s|$)", re.IGNORECASE)
_SEARCH_RE = re.compile(r"^/s(earch)?\s", re.IGNORECASE)


class RecipeInProgressError(Exception):
    pass


class SessionNotFoundError(Exception):
    pass


class SessionOrchestrator:
    """Runs recipes for one chat session.

    The session is busy from the moment a recipe is accepted until its turn
    completes, fails or is aborted. Only one recipe runs at a time. Chat and
    input history live in the shared ``HistoryStore``.
    """

    def __init__(
        self,
        chat: ChatClient,
        config: TandemConfig,
        recipes: RecipeRegistry,
        history: HistoryStore,
        auth: AuthProvider,
        codebase_context: CodebaseContext | None = None,
        plugins: PluginCatalog | None = None,
        guardrails: Guardrails | None = None,
        intent_detector: IntentDetector | None = None,
        editor: EditorState | None = None,
        hooks: SessionHooks | None = None,
        token_counter: TokenCounter | None = None,
        my_prompts: MyPromptStore | None = None,
    ):
        self.chat = chat
        self.config = config
        self.recipes = recipes
        self.history = history
        self.auth = auth
        self.codebase_context = codebase_context
        self.plugins = plugins
        self.guardrails = guardrails
        self.intent_detector = intent_detector
        self.editor = editor
        self.hooks = hooks or SessionHooks()
        self.token_counter = token_counter or get_token_counter(config.token_counter)
        self.my_prompts = my_prompts

        self.current_chat_id = ""
        self.transcript = Transcript()
        # Recipes may subscribe to sub-streams of the response.
        self.multiplexer = ResponseMultiplexer()
        self.idle = IdleScheduler(lambda: self.is_idle, interval_s=config.idle_interval_s)

        self._in_progress = False
        self._preparing = False
        self._cancel_completion_callback: Callable[[], None] | None = None
        self._completion: CompletionTask | None = None
        self._background: set[asyncio.Task] = set()
        self._suggested_for: Interaction | None = None

        self._create_new_chat_id()

    async def init(self) -> None:
        self.history.load()
        self._send_transcript()
        self._send_history()
        self._send_enabled_plugins()
        await self._load_recent_chat()
        await self._send_my_prompts()

    @property
    def is_idle(self) -> bool:
        return not (self._in_progress or self._preparing)

    @property
    def max_prompt_tokens(self) -> int:
        status = self.auth.get_auth_status()
        return max_prompt_tokens(
            prompt_limit=self.config.prompt_token_limit,
            solution_limit=self.config.solution_token_limit,
            server_max_tokens=status.chat_model_max_tokens,
        )

    def on_idle(self, callback: IdleCallback) -> None:
        self.idle.on_idle(callback)

    async def run_idle_recipe(self, recipe_id: str, human_input: str = "") -> None:
        if not self.is_idle:
            raise RuntimeError("not idle")
        await self.execute_recipe(recipe_id, human_input)

    async def clear_and_restart_session(self) -> None:
        await self._save_transcript_to_chat_history()
        self._create_new_chat_id()
        self.cancel_completion()
        self.multiplexer = ResponseMultiplexer()
        self._in_progress = False
        self.transcript.reset()
        self.hooks.fire_suggestions([])
        self._send_transcript()
        self._send_history()

    async def clear_history(self) -> None:
        await self.history.clear()
        self._send_history()

    async def restore_session(self, chat_id: str) -> None:
        data = self.history.get(chat_id)
        if data is None:
            raise SessionNotFoundError(f"No chat history for session {chat_id}")
        await self._save_transcript_to_chat_history()
        self.cancel_completion()
        self.multiplexer = ResponseMultiplexer()
        self._in_progress = False
        self.current_chat_id = chat_id
        self.transcript = Transcript.from_json(data)
        self._send_transcript()
        self._send_history()

    async def delete_history(self, chat_id: str) -> None:
        await self.history.delete(chat_id)
        self._send_history()

    async def set_enabled_plugins(self, names: Iterable[str]) -> list[str]:
        if self.plugins is None:
            raise ValueError("Plugins are not available in this session")
        enabled = await self.plugins.set_enabled(names)
        self.hooks.fire_enabled_plugins(enabled)
        return enabled

    def is_custom_recipe_action(self, title: str) -> bool:
        return title in CUSTOM_RECIPE_ACTIONS

    async def execute_custom_recipe(self, title: str) -> str | None:
        """Handles a custom prompts action or runs the prompt named ``title``.

        ``get`` and ``menu`` resend the prompt names, ``add`` writes an example
        prompts file. Returns the prompt text that was run, if any.
        """
        if not self.config.experimental_custom_recipes:
            logger.debug(f"Custom recipes are disabled, ignoring {title!r}")
            return None
        if not title or title in ("get", "menu"):
            await self._send_my_prompts()
            return None
        if self.my_prompts is None:
            logger.debug(f"No custom prompts store for {title!r}")
            return None
        if title == "add":
            try:
                await self.my_prompts.add_example_file()
            except OSError as e:
                self.hooks.fire_error(f"Could not create a new prompts file: {e}")
                return None
            await self._send_my_prompts()
            return None

        await self.my_prompts.refresh()
        prompt_text = self.my_prompts.find(title)
        if prompt_text is None:
            logger.debug(f"No custom prompt named {title!r}")
            return None
        await self.execute_commands(prompt_text, MY_PROMPT_RECIPE_ID)
        return prompt_text

    async def execute_commands(self, text: str, recipe_id: str = "chat-question") -> None:
        await self.history.add_input(text)
        if _OPEN_RE.match(text) and self.my_prompts is not None:
            await self.execute_custom_recipe(text.partition(" ")[2].strip())
        elif _RESET_RE.match(text):
            await self.clear_and_restart_session()
        elif _SEARCH_RE.match(text):
            await self.execute_recipe("context-search", text)
        else:
            await self.execute_recipe(recipe_id, text)

    async def execute_recipe(self, recipe_id: str, human_input: str = "") -> None:
        logger.debug(f"execute_recipe {recipe_id}: {human_input!r}")
        if not self.is_idle:
            self.hooks.fire_error(BUSY_MESSAGE)
            raise RecipeInProgressError(BUSY_MESSAGE)

        recipe = self.recipes.get(recipe_id)
        if recipe is None:
            logger.debug(f"No recipe found for {recipe_id}")
            return

        # A new multiplexer drops any subscribers left from an earlier turn.
        multiplexer = ResponseMultiplexer()
        self.multiplexer = multiplexer

        self._preparing = True
        try:
            interaction = await recipe.get_interaction(human_input, self._recipe_context(multiplexer))
        finally:
            self._preparing = False
        if interaction is None:
            return
        if self.multiplexer is not multiplexer:
            logger.debug(f"Recipe {recipe_id} was aborted while preparing its interaction")
            return

        self._in_progress = True
        self.transcript.add_interaction(interaction)
        try:
            plugins_result = PluginRunResult()
            if recipe.uses_plugins and self.config.plugins_enabled and self.plugins is not None:
                plugins_result = await self._get_plugins_context(human_input)
                if self.multiplexer is not multiplexer or not self._in_progress:
                    logger.debug(f"Recipe {recipe_id} was aborted while gathering plugin context")
                    return

            if not recipe.requires_model:
                await self._on_completion_end()
                return

            self._send_transcript()
            result = self.transcript.get_prompt_for_last_interaction(
                get_preamble(self._codebase(), self._premade()),
                self.max_prompt_tokens,
                plugins_result.prompt,
                counter=self.token_counter,
            )
            self.transcript.set_used_context_files_for_last_interaction(
                result.context_files, plugins_result.execution_infos
            )
        except Exception:
            self._in_progress = False
            self._send_transcript()
            raise

        self._send_prompt(result.prompt, interaction.get_assistant_message().prefix or "")
        await self._save_transcript_to_chat_history()
        logger.info(f"Recipe {recipe_id} dispatched")

    async def run_recipe_for_suggestion(self, recipe_id: str, human_input: str = "") -> None:
        recipe = self.recipes.get(recipe_id)
        if recipe is None:
            return
        try:
            multiplexer = ResponseMultiplexer()
            transcript = self.transcript.clone()
            interaction = await recipe.get_interaction(human_input, self._recipe_context(multiplexer))
            if interaction is None:
                return
            transcript.add_interaction(interaction)
            result = transcript.get_prompt_for_last_interaction(
                get_preamble(self._codebase(), self._premade()),
                self.max_prompt_tokens,
                counter=self.token_counter,
            )
            transcript.set_used_context_files_for_last_interaction(result.context_files)

            text = ""

            async def on_response(content: str) -> None:
                nonlocal text
                text += content

            async def on_turn_complete() -> None:
                self.hooks.fire_suggestions(extract_suggestions(text))

            async def on_error(error: ChatError) -> None:
                logger.error(f"Suggestion request failed: {error.message} ({error.status_code})")

            multiplexer.sub(
                ResponseMultiplexer.DEFAULT_TOPIC, ResponseSubscriber(on_response, on_turn_complete)
            )
            task = CompletionTask(
                self.chat.stream(result.prompt),
                multiplexer.publish,
                multiplexer.notify_turn_complete,
                on_error,
            )
            await task.wait()
        except Exception:
            logger.exception(f"Suggestion recipe {recipe_id} failed")

    def cancel_completion(self) -> None:
        callback = self._cancel_completion_callback
        self._cancel_completion_callback = None
        if callback is not None:
            callback()

    async def abort_completion(self) -> None:
        multiplexer = self.multiplexer
        self.cancel_completion()
        # Partial text is committed before the multiplexer is replaced.
        await multiplexer.notify_turn_complete()
        self.multiplexer = ResponseMultiplexer()
        await self._on_completion_end()

    async def wait_for_completion(self) -> None:
        if self._completion is not None:
            await self._completion.wait()

    def dispose(self) -> None:
        self.cancel_completion()
        self.idle.close()
        for task in list(self._background):
            task.cancel()

    def _send_prompt(self, prompt: Sequence[Message], response_prefix: str = "") -> None:
        self.cancel_completion()
        multiplexer = self.multiplexer
        text = ""

        async def on_response(content: str) -> None:
            nonlocal text
            if multiplexer is not self.multiplexer:
                return
            text += content
            self.transcript.add_assistant_response(text, reformat_bot_message(text, response_prefix))
            self._send_transcript()

        async def on_turn_complete() -> None:
            if multiplexer is not self.multiplexer:
                return
            if self.transcript.get_last_interaction() is not None:
                display_text = reformat_bot_message(text, response_prefix)
                display_text = await self._annotate_attributions(display_text)
                self.transcript.add_assistant_response(text, display_text)
            await self._on_completion_end()

        multiplexer.sub(
            ResponseMultiplexer.DEFAULT_TOPIC, ResponseSubscriber(on_response, on_turn_complete)
        )

        async def on_error(error: ChatError) -> None:
            await self._on_stream_error(error, multiplexer)

        self._completion = CompletionTask(
            self.chat.stream(prompt),
            multiplexer.publish,
            multiplexer.notify_turn_complete,
            on_error,
        )
        self._cancel_completion_callback = self._completion.cancel

    async def _on_stream_error(self, error: ChatError, multiplexer: ResponseMultiplexer) -> None:
        logger.debug(f"Chat stream error: {error.message} (status {error.status_code})")
        if is_abort_error(error):
            return
        if multiplexer is not self.multiplexer:
            return
        if is_auth_error(error):
            logger.info(f"Request rejected with status {error.status_code}, re-authenticating")
            self._reauthenticate()

        message = NETWORK_ERROR_MESSAGE if is_network_error(error) else error.message
        self.transcript.add_error_as_assistant_response(message)
        self.hooks.fire_transcript_error(True)
        # The codebase connection check would only repeat the failure shown above.
        await self._on_completion_end(ignore_embeddings_error=True)
        logger.error(f"Completion request failed: {message}")

    def _reauthenticate(self) -> None:
        task = asyncio.ensure_future(
            self.auth.auth(
                self.config.server_endpoint,
                self.config.access_token,
                self.config.custom_headers,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Re-authentication failed: {error}")

    async def _on_completion_end(self, ignore_embeddings_error: bool = False) -> None:
        # Each accepted turn ends once, however many paths report it.
        if not self._in_progress:
            return
        self._in_progress = False
        self._cancel_completion_callback = None
        self._send_transcript()
        await self._save_transcript_to_chat_history()
        self._send_history()
        if not ignore_embeddings_error:
            self._log_embeddings_search_errors()
        self.idle.schedule()
        if self.config.experimental_chat_predictions:
            self._queue_suggestions()

    async def _get_plugins_context(self, human_input: str) -> PluginRunResult:
        enabled = self.plugins.enabled_plugins() if self.plugins is not None else []
        if not enabled:
            return PluginRunResult()
        logger.debug(f"Enabled plugins: {[plugin.name for plugin in enabled]}")

        self.transcript.add_assistant_response("", "Identifying applicable plugins...\n")
        self._send_transcript()

        previous = self.transcript.get_prompt_for_last_interaction(
            (),
            self.max_prompt_tokens,
            (),
            only_human_messages=True,
            counter=self.token_counter,
        ).prompt

        try:
            descriptors = await choose_data_sources(human_input, self.chat, enabled, previous)
            logger.debug(f"Plugin functions chosen: {len(descriptors)}")
            if descriptors:
                names = ", ".join(dict.fromkeys(d.plugin_name for d in descriptors))
                self.transcript.add_assistant_response("", f"Using {names} for additional context...\n")
                self._send_transcript()
                return await run_plugin_functions(descriptors, self.config.plugins_config)
        except Exception:
            logger.exception("Error getting plugin context")
        return PluginRunResult()

    async def _annotate_attributions(self, text: str) -> str:
        if not self.config.experimental_guardrails or self.guardrails is None:
            return text
        try:
            result = await annotate_attribution(self.guardrails, text)
        except Exception:
            logger.exception("Attribution annotation failed")
            return text
        if result.code_blocks > 0:
            logger.debug(
                f"Annotated {result.code_blocks} code blocks in {result.duration_ms}ms"
            )
        return result.text

    def _queue_suggestions(self) -> None:
        interaction = self.transcript.get_last_interaction()
        if interaction is None or interaction is self._suggested_for:
            return
        assistant = interaction.get_assistant_message()
        if assistant.error or not assistant.text:
            return
        self._suggested_for = interaction
        question = interaction.get_human_message().text or ""
        self.idle.on_idle(lambda: self.run_recipe_for_suggestion(SUGGESTIONS_RECIPE_ID, question))

    def _log_embeddings_search_errors(self) -> None:
        if self.config.use_context != "embeddings" or self.codebase_context is None:
            return
        search_errors = self.codebase_context.get_embedding_search_errors()
        if self.codebase_context.check_embeddings_connection() and search_errors:
            self.transcript.add_error_as_assistant_response(search_errors)
            self.hooks.fire_transcript_error(True)
            logger.debug(f"Codebase search errors: {search_errors}")

    def _recipe_context(self, multiplexer: ResponseMultiplexer) -> RecipeContext:
        return RecipeContext(
            editor=self.editor,
            intent_detector=self.intent_detector,
            codebase_context=self.codebase_context,
            response_multiplexer=multiplexer,
            first_interaction=self.transcript.is_empty,
        )

    def _codebase(self) -> str | None:
        if self.config.codebase:
            return self.config.codebase
        if self.codebase_context is not None:
            return self.codebase_context.get_codebase()
        return None

    def _create_new_chat_id(self) -> None:
        self.current_chat_id = new_chat_id()

    async def _load_recent_chat(self) -> None:
        chat_id = self.history.most_recent_chat_id()
        if chat_id is not None:
            await self.restore_session(chat_id)

    async def _save_transcript_to_chat_history(self) -> None:
        if self.transcript.is_empty:
            return
        await self.history.save_transcript(self.current_chat_id, self.transcript.to_json())

    def _send_transcript(self) -> None:
        self.hooks.fire_transcript(self.transcript.to_chat(), self._in_progress)

    def _send_history(self) -> None:
        self.hooks.fire_history(self.history.snapshot())

    def _send_enabled_plugins(self) -> None:
        names = self.plugins.enabled_names() if self.plugins is not None else []
        self.hooks.fire_enabled_plugins(names)

    async def _send_my_prompts(self) -> None:
        enabled = self.config.experimental_custom_recipes
        names: list[str] = []
        if enabled and self.my_prompts is not None:
            await self.my_prompts.refresh()
            names = self.my_prompts.list_names()
        self.hooks.fire_my_prompts(names, enabled)

    def _premade(self) -> Premade | None:
        if not self.config.experimental_custom_recipes or self.my_prompts is None:
            return None
        return self.my_prompts.premade
