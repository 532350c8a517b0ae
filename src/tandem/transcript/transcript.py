from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from tandem.tokens import TokenCounter, estimate_message_tokens, estimate_messages_tokens, estimate_tokens
from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import (
    ChatMessage,
    ContextFile,
    ContextMessage,
    Message,
    PluginExecutionInfo,
    TranscriptJSON,
)

REQUEST_FAILED_TEXT = "Failed to generate a response due to server error."


@dataclass
class PromptResult:
    prompt: list[Message] = field(default_factory=list)
    context_files: list[ContextFile] = field(default_factory=list)


class Transcript:
    """Ordered interactions of one chat session."""

    def __init__(self, interactions: list[Interaction] | None = None):
        self.interactions: list[Interaction] = list(interactions or [])

    @property
    def is_empty(self) -> bool:
        return len(self.interactions) == 0

    def add_interaction(self, interaction: Interaction | None) -> None:
        if interaction is None:
            return
        self.interactions.append(interaction)

    def get_last_interaction(self) -> Interaction | None:
        return self.interactions[-1] if self.interactions else None

    def add_assistant_response(self, text: str, display_text: str | None = None) -> None:
        interaction = self.get_last_interaction()
        if interaction is None:
            return
        message = interaction.get_assistant_message()
        message.text = text
        message.display_text = display_text if display_text is not None else text
        interaction.set_assistant_message(message)

    def add_error_as_assistant_response(self, error_text: str) -> None:
        interaction = self.get_last_interaction()
        if interaction is None:
            return
        message = interaction.get_assistant_message()
        message.text = REQUEST_FAILED_TEXT
        message.display_text = f"Request failed: {error_text}"
        message.error = error_text
        interaction.set_assistant_message(message)

    def set_used_context_files_for_last_interaction(
        self,
        context_files: list[ContextFile],
        plugin_execution_infos: list[PluginExecutionInfo] | None = None,
    ) -> None:
        interaction = self.get_last_interaction()
        if interaction is None:
            raise ValueError("Cannot set context files on an empty transcript")
        interaction.set_used_context(context_files, plugin_execution_infos)

    def get_prompt_for_last_interaction(
        self,
        preamble: Sequence[Message] = (),
        max_prompt_tokens: int = 7000,
        plugin_preamble: Sequence[Message] = (),
        only_human_messages: bool = False,
        counter: TokenCounter = estimate_tokens,
    ) -> PromptResult:
        if not self.interactions:
            return PromptResult()

        messages: list[Message] = []
        last_index = len(self.interactions) - 1
        for index, interaction in enumerate(self.interactions):
            human = interaction.get_human_message()
            assistant = interaction.get_assistant_message()
            if index == last_index and not only_human_messages:
                messages.extend(interaction.get_full_context())
            messages.extend([human, assistant])

        fixed_tokens = estimate_messages_tokens(preamble, counter) + estimate_messages_tokens(
            plugin_preamble, counter
        )
        truncated = truncate_prompt(messages, max_prompt_tokens - fixed_tokens, counter)

        context_files = [
            m.file for m in truncated if isinstance(m, ContextMessage) and m.file is not None
        ]
        plain = [Message(speaker=m.speaker, text=m.text) for m in truncated]
        return PromptResult(
            prompt=[*preamble, *plugin_preamble, *plain],
            context_files=context_files,
        )

    def to_chat(self) -> list[ChatMessage]:
        return [message for interaction in self.interactions for message in interaction.to_chat()]

    def to_json(self) -> TranscriptJSON:
        last = self.get_last_interaction()
        return TranscriptJSON(
            interactions=[interaction.to_json() for interaction in self.interactions],
            last_interaction_timestamp=(
                last.timestamp if last else datetime.now(timezone.utc).isoformat()
            ),
        )

    @classmethod
    def from_json(cls, data: TranscriptJSON | dict) -> "Transcript":
        if isinstance(data, dict):
            data = TranscriptJSON.model_validate(data)
        return cls([Interaction.from_json(item) for item in data.interactions])

    def clone(self) -> "Transcript":
        return Transcript.from_json(self.to_json())

    def reset(self) -> None:
        self.interactions = []


def truncate_prompt(
    messages: list[Message], max_tokens: int, counter: TokenCounter = estimate_tokens
) -> list[Message]:
    """Keep the newest human/assistant pairs that fit within max_tokens."""
    kept: list[Message] = []
    budget = max_tokens
    for i in range(len(messages) - 1, 0, -2):
        human = messages[i - 1]
        assistant = messages[i]
        usage = estimate_message_tokens(human, counter) + estimate_message_tokens(assistant, counter)
        if usage > budget:
            break
        kept.extend([assistant, human])
        budget -= usage
    kept.reverse()
    return kept
