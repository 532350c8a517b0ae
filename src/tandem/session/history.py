import logging

from tandem.services.storage import LocalStorage
from tandem.transcript.messages import TranscriptJSON, UserLocalHistory

logger = logging.getLogger(__name__)


class HistoryStore:
    """Chat and input history shared by every session in the process.

    Loaded from storage on first access and flushed on every mutation. Each
    update replaces the whole chat map or input list.
    """

    def __init__(self, storage: LocalStorage, max_inputs: int = 100):
        self.storage = storage
        self.max_inputs = max_inputs
        self._chat: dict[str, TranscriptJSON] = {}
        self._input: list[str] = []
        self._loaded = False

    def load(self) -> UserLocalHistory:
        if not self._loaded:
            stored = self.storage.get_chat_history()
            if stored is not None:
                self._chat = dict(stored.chat)
                self._input = list(stored.input)
            self._loaded = True
        return self.snapshot()

    def snapshot(self) -> UserLocalHistory:
        return UserLocalHistory(chat=dict(self._chat), input=list(self._input))

    def get(self, chat_id: str) -> TranscriptJSON | None:
        self.load()
        return self._chat.get(chat_id)

    def most_recent_chat_id(self) -> str | None:
        self.load()
        if not self._chat:
            return None
        return max(self._chat.items(), key=lambda item: item[1].last_interaction_timestamp)[0]

    def list_chats(self) -> list[tuple[str, TranscriptJSON]]:
        self.load()
        return sorted(
            self._chat.items(),
            key=lambda item: item[1].last_interaction_timestamp,
            reverse=True,
        )

    async def save_transcript(self, chat_id: str, transcript: TranscriptJSON) -> None:
        self.load()
        self._chat = {**self._chat, chat_id: transcript}
        await self.flush()

    async def add_input(self, text: str) -> None:
        self.load()
        text = text.strip()
        if not text:
            return
        self._input = [*self._input, text][-self.max_inputs :]
        await self.flush()

    async def delete(self, chat_id: str) -> None:
        self.load()
        self._chat = {key: value for key, value in self._chat.items() if key != chat_id}
        await self.storage.delete_chat_history(chat_id)

    async def clear(self) -> None:
        self._chat = {}
        self._input = []
        self._loaded = True
        await self.storage.remove_chat_history()

    async def flush(self) -> None:
        await self.storage.set_chat_history(self.snapshot())
