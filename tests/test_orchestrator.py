import asyncio
import dataclasses
import json

import pytest

from fakes import ControlledStream, FakeAuth, FakeChatClient, FakeGuardrails, Recorder

from tandem.chat.transport import ChatError
from tandem.context.codebase import KeywordCodebaseContext
from tandem.plugins.api import Plugin, PluginFunction
from tandem.plugins.catalog import PluginCatalog
from tandem.prompts import Prompts, get_preamble
from tandem.recipes.chat_question import ChatQuestion
from tandem.recipes.my_prompt import MyPromptStore
from tandem.recipes.registry import RecipeRegistry, default_registry
from tandem.session.orchestrator import (
    BUSY_MESSAGE,
    NETWORK_ERROR_MESSAGE,
    RecipeInProgressError,
    SessionNotFoundError,
)
from tandem.transcript.messages import Message
from tandem.transcript.transcript import REQUEST_FAILED_TEXT, Transcript


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def weather_catalog(storage, calls: list) -> PluginCatalog:
    async def get_weather(params, config):
        calls.append(params)
        return {"city": params.get("city"), "temp": 20}

    plugin = Plugin(
        name="weather",
        description="Current weather",
        functions=[
            PluginFunction(
                name="get_weather",
                description="Weather for a city",
                parameters={"type": "object", "properties": {"city": {"type": "string"}}},
                handler=get_weather,
            )
        ],
    )
    return PluginCatalog(storage, [plugin])


@pytest.mark.asyncio
async def test_chat_question_without_plugins(make_session):
    chat = FakeChatClient(["Hel", "lo"])
    session = make_session(chat)

    await session.execute_recipe("chat-question", "hi")
    await session.wait_for_completion()

    assert len(session.transcript.interactions) == 1
    interaction = session.transcript.get_last_interaction()
    assert interaction.plugin_execution_infos == []
    assert interaction.get_assistant_message().text == "Hello"

    prompt = chat.prompts[0]
    preamble = get_preamble()
    assert prompt[: len(preamble)] == preamble
    assert prompt[len(preamble):] == [
        Message(speaker="human", text="hi"),
        Message(speaker="assistant", text=None),
    ]
    assert chat.complete_calls == []
    assert session.is_idle
    session.dispose()


@pytest.mark.asyncio
async def test_enabled_plugin_switch_without_plugins_adds_nothing(make_session, config, storage):
    chat = FakeChatClient(["ok"])
    session = make_session(
        chat,
        config=dataclasses.replace(config, plugins_enabled=True),
        plugins=PluginCatalog(storage),
    )

    await session.execute_recipe("chat-question", "hi")
    await session.wait_for_completion()

    results_prefix = Prompts.plugin_results.split("{")[0]
    assert not any((m.text or "").startswith(results_prefix) for m in chat.prompts[0])
    assert session.transcript.get_last_interaction().plugin_execution_infos == []
    assert chat.complete_calls == []
    session.dispose()


@pytest.mark.asyncio
async def test_chunks_accumulate_in_order(make_session):
    stream = ControlledStream()
    session = make_session(FakeChatClient(stream))
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "greet me")
    stream.push("Hel")
    await settle()
    assert session.transcript.get_last_interaction().get_assistant_message().text == "Hel"

    stream.push("lo")
    await settle()
    assistant = session.transcript.get_last_interaction().get_assistant_message()
    assert assistant.text == "Hello"
    assert assistant.display_text == "Hello"
    messages, in_progress = recorder.transcripts[-1]
    assert in_progress is True
    assert messages[-1].display_text == "Hello"

    stream.finish()
    await session.wait_for_completion()
    assert recorder.transcripts[-1][1] is False
    assert session.transcript.get_last_interaction().get_assistant_message().text == "Hello"
    session.dispose()


@pytest.mark.asyncio
async def test_second_recipe_while_busy_is_rejected(make_session):
    stream = ControlledStream()
    chat = FakeChatClient(stream)
    session = make_session(chat)
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "first")
    assert not session.is_idle

    with pytest.raises(RecipeInProgressError):
        await session.execute_recipe("chat-question", "second")

    assert recorder.errors == [BUSY_MESSAGE]
    assert len(session.transcript.interactions) == 1
    assert len(chat.prompts) == 1

    stream.finish()
    await session.wait_for_completion()
    assert session.is_idle
    session.dispose()


@pytest.mark.asyncio
async def test_unknown_recipe_is_ignored(make_session):
    chat = FakeChatClient()
    session = make_session(chat)

    await session.execute_recipe("does-not-exist", "hi")

    assert session.transcript.is_empty
    assert session.is_idle
    assert chat.prompts == []


@pytest.mark.asyncio
async def test_declined_recipe_leaves_session_idle(make_session):
    chat = FakeChatClient()
    session = make_session(chat)

    await session.execute_recipe("chat-question", "   ")

    assert session.transcript.is_empty
    assert session.is_idle
    assert chat.prompts == []


@pytest.mark.asyncio
async def test_cancelled_stream_chunks_never_reach_next_turn(make_session):
    old = ControlledStream()
    new = ControlledStream()
    session = make_session(FakeChatClient(old, new))

    await session.execute_recipe("chat-question", "first")
    old.push("old ")
    await settle()

    await session.abort_completion()
    assert session.is_idle
    await settle()
    assert old.closed

    await session.execute_recipe("chat-question", "second")
    old.push("stale")
    new.push("fresh")
    new.finish()
    await session.wait_for_completion()

    first, second = session.transcript.interactions
    assert first.get_assistant_message().text == "old "
    assert second.get_assistant_message().text == "fresh"
    assert all("stale" not in (m.text or "") for m in session.transcript.to_chat())
    session.dispose()


@pytest.mark.asyncio
async def test_auth_error_reauthenticates_once(make_session):
    auth = FakeAuth()
    session = make_session(
        FakeChatClient([ChatError("Unauthorized", status_code=401)]), auth=auth
    )
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "hi")
    await session.wait_for_completion()
    await settle()

    assert auth.calls == ["http://tandem.test"]
    errors = [i for i in session.transcript.interactions if i.get_assistant_message().error]
    assert len(errors) == 1
    assistant = errors[0].get_assistant_message()
    assert assistant.error == "Unauthorized"
    assert assistant.text == REQUEST_FAILED_TEXT
    assert recorder.transcript_errors == [True]
    assert session.is_idle
    session.dispose()


@pytest.mark.asyncio
async def test_network_error_is_rewritten(make_session):
    auth = FakeAuth()
    session = make_session(
        FakeChatClient([ChatError("connect failed", kind="network")]), auth=auth
    )

    await session.execute_recipe("chat-question", "hi")
    await session.wait_for_completion()

    assistant = session.transcript.get_last_interaction().get_assistant_message()
    assert assistant.error == NETWORK_ERROR_MESSAGE
    assert auth.calls == []
    session.dispose()


def test_max_prompt_tokens_prefers_local_limits(make_session, config):
    session = make_session(
        FakeChatClient(),
        config=dataclasses.replace(config, prompt_token_limit=4000, solution_token_limit=1000),
        auth=FakeAuth(max_tokens=8000),
    )
    assert session.max_prompt_tokens == 3000


def test_max_prompt_tokens_from_server(make_session):
    session = make_session(FakeChatClient(), auth=FakeAuth(max_tokens=8000))
    assert session.max_prompt_tokens == 6900


@pytest.mark.asyncio
async def test_context_search_answers_without_model(make_session, tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / "widget.py").write_text("class Widget:\n    pass\n")
    chat = FakeChatClient()
    session = make_session(chat, codebase_context=KeywordCodebaseContext(root))

    await session.execute_commands("/search widget")

    assert chat.prompts == []
    assistant = session.transcript.get_last_interaction().get_assistant_message()
    assert "widget.py" in assistant.text
    assert session.is_idle
    assert session.history.snapshot().input == ["/search widget"]


@pytest.mark.asyncio
async def test_reset_command_starts_new_chat(make_session):
    session = make_session(FakeChatClient(["answer"]))
    recorder = Recorder(session.hooks)
    await session.execute_commands("question")
    await session.wait_for_completion()
    old_id = session.current_chat_id

    await session.execute_commands("/reset")

    assert session.transcript.is_empty
    assert session.current_chat_id != old_id
    assert session.history.get(old_id) is not None
    assert recorder.suggestions[-1] == []
    session.dispose()


@pytest.mark.asyncio
async def test_restore_session(make_session):
    session = make_session(FakeChatClient(["one"], ["two"]))
    await session.execute_recipe("chat-question", "first chat")
    await session.wait_for_completion()
    first_id = session.current_chat_id

    await session.clear_and_restart_session()
    await session.execute_recipe("chat-question", "second chat")
    await session.wait_for_completion()

    await session.restore_session(first_id)

    assert session.current_chat_id == first_id
    assert [i.get_human_message().text for i in session.transcript.interactions] == ["first chat"]
    assert len(session.history.list_chats()) == 2

    with pytest.raises(SessionNotFoundError):
        await session.restore_session("missing")
    session.dispose()


@pytest.mark.asyncio
async def test_init_loads_most_recent_chat(make_session, history):
    older = make_session(FakeChatClient(["a"]))
    await older.execute_recipe("chat-question", "older")
    await older.wait_for_completion()
    older.dispose()

    newer = make_session(FakeChatClient(["b"]))
    await newer.execute_recipe("chat-question", "newer")
    await newer.wait_for_completion()
    newer.dispose()

    session = make_session(FakeChatClient())
    recorder = Recorder(session.hooks)
    await session.init()

    assert session.current_chat_id == newer.current_chat_id
    assert session.transcript.get_last_interaction().get_human_message().text == "newer"
    assert recorder.histories
    assert recorder.enabled_plugins == [[]]


@pytest.mark.asyncio
async def test_turn_is_persisted(make_session, config):
    session = make_session(FakeChatClient(["stored"]))
    await session.execute_recipe("chat-question", "keep this")
    await session.wait_for_completion()

    data = json.loads(config.history_path.read_text())
    chat = data["chat_history"]["chat"][session.current_chat_id]
    assert chat["interactions"][0]["assistant_message"]["text"] == "stored"
    session.dispose()


@pytest.mark.asyncio
async def test_delete_and_clear_history(make_session):
    session = make_session(FakeChatClient(["a"]))
    await session.execute_commands("hello")
    await session.wait_for_completion()
    chat_id = session.current_chat_id

    await session.delete_history(chat_id)
    assert session.history.get(chat_id) is None
    assert session.history.snapshot().input == ["hello"]

    await session.clear_history()
    assert session.history.snapshot().input == []
    session.dispose()


@pytest.mark.asyncio
async def test_plugin_context_is_added_to_prompt(make_session, config, storage):
    calls: list = []
    catalog = weather_catalog(storage, calls)
    await catalog.set_enabled(["weather"])
    chat = FakeChatClient(
        ["It is warm."],
        completions=['[{"name": "get_weather", "parameters": {"city": "Oslo"}}]'],
    )
    session = make_session(
        chat, config=dataclasses.replace(config, plugins_enabled=True), plugins=catalog
    )

    await session.execute_recipe("chat-question", "weather in Oslo?")
    await session.wait_for_completion()

    assert calls == [{"city": "Oslo"}]
    infos = session.transcript.get_last_interaction().plugin_execution_infos
    assert [info.name for info in infos] == ["get_weather"]
    assert infos[0].output == {"city": "Oslo", "temp": 20}
    results_prefix = Prompts.plugin_results.split("{")[0]
    assert any((m.text or "").startswith(results_prefix) for m in chat.prompts[0])
    assert session.transcript.get_last_interaction().get_assistant_message().text == "It is warm."
    session.dispose()


@pytest.mark.asyncio
async def test_plugin_selection_failure_degrades_silently(make_session, config, storage):
    calls: list = []
    catalog = weather_catalog(storage, calls)
    await catalog.set_enabled(["weather"])
    chat = FakeChatClient(["Plain answer"], completions=[ChatError("selection failed")])
    session = make_session(
        chat, config=dataclasses.replace(config, plugins_enabled=True), plugins=catalog
    )
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "weather?")
    await session.wait_for_completion()

    assert calls == []
    assert recorder.errors == []
    assert session.transcript.get_last_interaction().plugin_execution_infos == []
    assert session.transcript.get_last_interaction().get_assistant_message().text == "Plain answer"
    session.dispose()


@pytest.mark.asyncio
async def test_set_enabled_plugins_notifies(make_session, storage):
    session = make_session(FakeChatClient(), plugins=weather_catalog(storage, []))
    recorder = Recorder(session.hooks)

    assert await session.set_enabled_plugins(["weather"]) == ["weather"]
    assert recorder.enabled_plugins == [["weather"]]
    with pytest.raises(ValueError):
        await session.set_enabled_plugins(["nope"])


@pytest.mark.asyncio
async def test_guardrails_annotate_code_blocks(make_session, config):
    code = "```python\na = 1\nb = 2\nc = 3\n```"
    guardrails = FakeGuardrails(["octo/repo"])
    session = make_session(
        FakeChatClient([code]),
        config=dataclasses.replace(config, experimental_guardrails=True),
        guardrails=guardrails,
    )

    await session.execute_recipe("chat-question", "write code")
    await session.wait_for_completion()

    assistant = session.transcript.get_last_interaction().get_assistant_message()
    assert assistant.text == code
    assert "Guardrails" in assistant.display_text
    assert "octo/repo" in assistant.display_text
    assert len(guardrails.snippets) == 1
    session.dispose()


@pytest.mark.asyncio
async def test_suggestions_run_on_a_copy_of_the_transcript(make_session):
    chat = FakeChatClient(["- Sorting stability\n- Key functions\n"])
    session = make_session(chat)
    recorder = Recorder(session.hooks)

    await session.run_recipe_for_suggestion("next-questions", "How do I sort a list?")

    assert recorder.suggestions == [["Sorting stability", "Key functions"]]
    assert session.transcript.is_empty
    assert "How do I sort a list?" in chat.prompts[0][-2].text


@pytest.mark.asyncio
async def test_chat_predictions_queue_suggestions_when_idle(make_session, config):
    chat = FakeChatClient(["Use sorted()."], ["- Reverse order"])
    session = make_session(
        chat, config=dataclasses.replace(config, experimental_chat_predictions=True)
    )
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "How do I sort?")
    await session.wait_for_completion()
    await wait_until(lambda: recorder.suggestions)

    assert recorder.suggestions == [["Reverse order"]]
    assert len(session.transcript.interactions) == 1
    session.dispose()


@pytest.mark.asyncio
async def test_idle_callback_waits_for_turn_to_finish(make_session):
    stream = ControlledStream()
    session = make_session(FakeChatClient(stream))
    calls: list[str] = []

    await session.execute_recipe("chat-question", "hi")
    session.on_idle(lambda: calls.append("idle"))
    await asyncio.sleep(0.05)
    assert calls == []

    stream.finish()
    await session.wait_for_completion()
    await wait_until(lambda: calls)
    assert calls == ["idle"]
    session.dispose()


@pytest.mark.asyncio
async def test_run_idle_recipe_requires_idle(make_session):
    stream = ControlledStream()
    session = make_session(FakeChatClient(stream))

    await session.execute_recipe("chat-question", "hi")
    with pytest.raises(RuntimeError, match="not idle"):
        await session.run_idle_recipe("chat-question", "later")

    stream.finish()
    await session.wait_for_completion()
    session.dispose()


@pytest.mark.asyncio
async def test_restored_transcript_matches_saved(make_session):
    session = make_session(FakeChatClient(["reply"]))
    await session.execute_recipe("chat-question", "save me")
    await session.wait_for_completion()

    saved = session.history.get(session.current_chat_id)
    restored = Transcript.from_json(saved)

    assert restored.to_json() == session.transcript.to_json()
    session.dispose()


class GatedQuestion(ChatQuestion):
    """Holds its interaction until the test opens the gate."""

    def __init__(self):
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def get_interaction(self, human_input, context):
        self.started.set()
        await self.gate.wait()
        return await super().get_interaction(human_input, context)


@pytest.mark.asyncio
async def test_abort_while_recipe_prepares_drops_the_turn(make_session):
    recipe = GatedQuestion()
    chat = FakeChatClient(["answer"])
    session = make_session(chat, recipes=RecipeRegistry([recipe]))

    pending = asyncio.ensure_future(session.execute_recipe("chat-question", "first"))
    await recipe.started.wait()
    assert not session.is_idle

    await session.abort_completion()
    recipe.gate.set()
    await pending

    assert chat.prompts == []
    assert session.transcript.is_empty
    assert session.is_idle

    await session.execute_recipe("chat-question", "second")
    await session.wait_for_completion()
    assert [i.get_human_message().text for i in session.transcript.interactions] == ["second"]
    assert session.transcript.get_last_interaction().get_assistant_message().text == "answer"
    session.dispose()


@pytest.mark.asyncio
async def test_abort_ends_a_streaming_turn_once(make_session):
    stream = ControlledStream()
    session = make_session(FakeChatClient(stream))
    recorder = Recorder(session.hooks)

    await session.execute_recipe("chat-question", "hi")
    stream.push("partial")
    await wait_until(lambda: session.transcript.get_last_interaction().get_assistant_message().text)
    histories_before = len(recorder.histories)
    finished_before = sum(1 for _, in_progress in recorder.transcripts if not in_progress)

    await session.abort_completion()
    await settle()

    assert len(recorder.histories) == histories_before + 1
    assert sum(1 for _, in_progress in recorder.transcripts if not in_progress) == finished_before + 1
    assert session.transcript.get_last_interaction().get_assistant_message().text == "partial"
    assert session.is_idle
    session.dispose()


@pytest.mark.asyncio
async def test_abort_when_idle_reports_nothing(make_session):
    session = make_session(FakeChatClient())
    recorder = Recorder(session.hooks)

    await session.abort_completion()

    assert recorder.histories == []
    assert recorder.transcripts == []
    assert session.is_idle


def write_my_prompts(config) -> MyPromptStore:
    config.custom_prompts_path.write_text(
        json.dumps(
            {
                "premade": {"answer": "Ready when you are."},
                "recipes": {"Tests": {"prompt": "Write tests for the selection."}},
            }
        )
    )
    return MyPromptStore(config.custom_prompts_path)


@pytest.mark.asyncio
async def test_custom_recipes_are_off_by_default(make_session, config):
    chat = FakeChatClient(["unused"])
    store = write_my_prompts(config)
    session = make_session(chat, my_prompts=store)
    recorder = Recorder(session.hooks)

    await session.init()
    assert recorder.my_prompts == [([], False)]

    assert await session.execute_custom_recipe("Tests") is None
    await session.execute_recipe("chat-question", "hi")
    await session.wait_for_completion()
    assert chat.prompts[0][1].text == Prompts().answer
    session.dispose()


@pytest.mark.asyncio
async def test_named_custom_recipe_runs_with_premade_preamble(make_session, config):
    config = dataclasses.replace(config, experimental_custom_recipes=True)
    chat = FakeChatClient(["Here are the tests"])
    store = write_my_prompts(config)
    session = make_session(chat, config=config, my_prompts=store, recipes=default_registry(store))
    recorder = Recorder(session.hooks)

    await session.init()
    assert recorder.my_prompts == [(["Tests"], True)]
    assert session.is_custom_recipe_action("menu")
    assert not session.is_custom_recipe_action("Tests")

    assert await session.execute_custom_recipe("Tests") == "Write tests for the selection."
    await session.wait_for_completion()

    prompt = chat.prompts[0]
    assert prompt[1].text == "Ready when you are."
    assert prompt[-2] == Message(speaker="human", text="Write tests for the selection.")
    assert session.history.snapshot().input == ["Write tests for the selection."]
    assert await session.execute_custom_recipe("Missing") is None
    assert len(chat.prompts) == 1
    session.dispose()


@pytest.mark.asyncio
async def test_open_command_runs_a_custom_recipe(make_session, config):
    config = dataclasses.replace(config, experimental_custom_recipes=True)
    chat = FakeChatClient(["done"])
    store = write_my_prompts(config)
    session = make_session(chat, config=config, my_prompts=store, recipes=default_registry(store))
    recorder = Recorder(session.hooks)

    await session.execute_commands("/open")
    assert recorder.my_prompts == [(["Tests"], True)]
    assert chat.prompts == []

    await session.execute_commands("/open Tests")
    await session.wait_for_completion()

    assert session.transcript.get_last_interaction().get_assistant_message().text == "done"
    assert chat.prompts[0][-2].text == "Write tests for the selection."
    session.dispose()


@pytest.mark.asyncio
async def test_open_without_custom_prompts_is_a_question(make_session):
    chat = FakeChatClient(["answer"])
    session = make_session(chat)

    await session.execute_commands("/open sesame")
    await session.wait_for_completion()

    assert chat.prompts[0][-2].text == "/open sesame"
    session.dispose()


@pytest.mark.asyncio
async def test_add_custom_recipe_file(make_session, config):
    config = dataclasses.replace(config, experimental_custom_recipes=True)
    store = MyPromptStore(config.custom_prompts_path)
    session = make_session(FakeChatClient(), config=config, my_prompts=store)
    recorder = Recorder(session.hooks)

    await session.execute_custom_recipe("add")
    assert config.custom_prompts_path.exists()
    assert recorder.my_prompts == [(store.list_names(), True)]
    assert store.list_names()

    await session.execute_custom_recipe("add")
    assert recorder.errors and "Could not create a new prompts file" in recorder.errors[0]
    session.dispose()
