import asyncio
import logging
from pathlib import Path
from typing import Any

from common.jsonio import atomic_write_json, load_json
from tandem.transcript.messages import UserLocalHistory

logger = logging.getLogger(__name__)

HISTORY_KEY = "chat_history"
ENABLED_PLUGINS_KEY = "enabled_plugins"


class LocalStorage:
    """JSON-file store for chat history and per-user settings."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    def _read(self) -> dict[str, Any]:
        if self._data is None:
            data = load_json(self.path)
            self._data = data if isinstance(data, dict) else {}
        return self._data

    async def _write(self, data: dict[str, Any]) -> None:
        self._data = data
        # Writes are serialized and always flush the newest snapshot.
        async with self._lock:
            await asyncio.to_thread(atomic_write_json, self.path, self._data)

    def get_chat_history(self) -> UserLocalHistory | None:
        raw = self._read().get(HISTORY_KEY)
        if not raw:
            return None
        return UserLocalHistory.model_validate(raw)

    async def set_chat_history(self, history: UserLocalHistory) -> None:
        data = {**self._read(), HISTORY_KEY: history.model_dump(mode="json")}
        await self._write(data)

    async def delete_chat_history(self, chat_id: str) -> None:
        history = self.get_chat_history()
        if history is None or chat_id not in history.chat:
            return
        chat = {key: value for key, value in history.chat.items() if key != chat_id}
        await self.set_chat_history(UserLocalHistory(chat=chat, input=history.input))

    async def remove_chat_history(self) -> None:
        data = {key: value for key, value in self._read().items() if key != HISTORY_KEY}
        await self._write(data)

    def get_enabled_plugins(self) -> list[str] | None:
        names = self._read().get(ENABLED_PLUGINS_KEY)
        return list(names) if isinstance(names, list) else None

    async def set_enabled_plugins(self, names: list[str]) -> None:
        data = {**self._read(), ENABLED_PLUGINS_KEY: list(names)}
        await self._write(data)
