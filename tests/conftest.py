import pytest
from pathlib import Path

from fakes import FakeAuth

from tandem.config import TandemConfig
from tandem.recipes.registry import default_registry
from tandem.services.storage import LocalStorage
from tandem.session.history import HistoryStore
from tandem.session.orchestrator import SessionOrchestrator


@pytest.fixture
def config(tmp_path: Path) -> TandemConfig:
    return TandemConfig(
        server_endpoint="http://tandem.test",
        access_token="secret",
        custom_headers={},
        codebase="",
        model="gpt-4o",
        use_context="none",
        plugins_enabled=False,
        plugins_config={},
        experimental_guardrails=False,
        experimental_chat_predictions=False,
        experimental_custom_recipes=False,
        prompt_token_limit=None,
        solution_token_limit=None,
        token_counter="chars",
        idle_interval_s=0.01,
        history_path=tmp_path / "history.json",
        custom_prompts_path=tmp_path / "prompts.json",
    )


@pytest.fixture
def storage(config: TandemConfig) -> LocalStorage:
    return LocalStorage(config.history_path)


@pytest.fixture
def history(storage: LocalStorage) -> HistoryStore:
    return HistoryStore(storage)


@pytest.fixture
def make_session(config, history):
    def factory(chat, **kwargs) -> SessionOrchestrator:
        kwargs.setdefault("config", config)
        kwargs.setdefault("recipes", default_registry())
        kwargs.setdefault("history", history)
        kwargs.setdefault("auth", FakeAuth())
        return SessionOrchestrator(chat=chat, **kwargs)

    return factory
