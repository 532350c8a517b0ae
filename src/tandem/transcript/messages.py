from typing import Any, Literal

from pydantic import BaseModel, Field

Speaker = Literal["human", "assistant"]


class Message(BaseModel):
    speaker: Speaker
    text: str | None = None

    def to_api(self) -> dict[str, str]:
        role = "user" if self.speaker == "human" else "assistant"
        return {"role": role, "content": self.text or ""}


class ContextFile(BaseModel):
    file_name: str
    repo_name: str | None = None
    revision: str | None = None
    source: str | None = None


class ContextMessage(Message):
    file: ContextFile | None = None


class InteractionMessage(Message):
    display_text: str | None = None
    prefix: str | None = None
    error: str | None = None


class PluginExecutionInfo(BaseModel):
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None


class ChatMessage(InteractionMessage):
    context_files: list[ContextFile] = Field(default_factory=list)
    plugin_execution_infos: list[PluginExecutionInfo] = Field(default_factory=list)
    timestamp: str | None = None


class InteractionJSON(BaseModel):
    human_message: InteractionMessage
    assistant_message: InteractionMessage
    full_context: list[ContextMessage] = Field(default_factory=list)
    used_context_files: list[ContextFile] = Field(default_factory=list)
    plugin_execution_infos: list[PluginExecutionInfo] = Field(default_factory=list)
    timestamp: str


class TranscriptJSON(BaseModel):
    interactions: list[InteractionJSON] = Field(default_factory=list)
    last_interaction_timestamp: str


class UserLocalHistory(BaseModel):
    chat: dict[str, TranscriptJSON] = Field(default_factory=dict)
    input: list[str] = Field(default_factory=list)
