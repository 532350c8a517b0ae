from datetime import datetime, timezone

from tandem.transcript.messages import (
    ChatMessage,
    ContextFile,
    ContextMessage,
    InteractionJSON,
    InteractionMessage,
    PluginExecutionInfo,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Interaction:
    def __init__(
        self,
        human_message: InteractionMessage,
        assistant_message: InteractionMessage,
        full_context: list[ContextMessage] | None = None,
        used_context_files: list[ContextFile] | None = None,
        plugin_execution_infos: list[PluginExecutionInfo] | None = None,
        timestamp: str | None = None,
    ):
        self.human_message = human_message
        self.assistant_message = assistant_message
        self.full_context = list(full_context or [])
        self.used_context_files = list(used_context_files or [])
        self.plugin_execution_infos = list(plugin_execution_infos or [])
        self.timestamp = timestamp or _now_iso()

    def get_human_message(self) -> InteractionMessage:
        return self.human_message.model_copy()

    def get_assistant_message(self) -> InteractionMessage:
        return self.assistant_message.model_copy()

    def set_assistant_message(self, message: InteractionMessage) -> None:
        self.assistant_message = message

    def get_full_context(self) -> list[ContextMessage]:
        return [m.model_copy() for m in self.full_context]

    def set_used_context(
        self,
        files: list[ContextFile],
        plugin_execution_infos: list[PluginExecutionInfo] | None = None,
    ) -> None:
        self.used_context_files = list(files)
        self.plugin_execution_infos = list(plugin_execution_infos or [])

    def to_chat(self) -> list[ChatMessage]:
        return [
            ChatMessage(
                **self.human_message.model_dump(),
                context_files=self.used_context_files,
                timestamp=self.timestamp,
            ),
            ChatMessage(
                **self.assistant_message.model_dump(),
                plugin_execution_infos=self.plugin_execution_infos,
                timestamp=self.timestamp,
            ),
        ]

    def to_json(self) -> InteractionJSON:
        return InteractionJSON(
            human_message=self.human_message,
            assistant_message=self.assistant_message,
            full_context=self.full_context,
            used_context_files=self.used_context_files,
            plugin_execution_infos=self.plugin_execution_infos,
            timestamp=self.timestamp,
        ).model_copy(deep=True)

    @classmethod
    def from_json(cls, data: InteractionJSON) -> "Interaction":
        data = data.model_copy(deep=True)
        return cls(
            human_message=data.human_message,
            assistant_message=data.assistant_message,
            full_context=data.full_context,
            used_context_files=data.used_context_files,
            plugin_execution_infos=data.plugin_execution_infos,
            timestamp=data.timestamp,
        )
