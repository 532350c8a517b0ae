from dataclasses import dataclass, field
from typing import Callable, List

from tandem.transcript.messages import ChatMessage, UserLocalHistory


@dataclass
class SessionHooks:
    on_transcript: List[Callable[[List[ChatMessage], bool], None]] = field(default_factory=list)
    on_history: List[Callable[[UserLocalHistory], None]] = field(default_factory=list)
    on_error: List[Callable[[str], None]] = field(default_factory=list)
    on_suggestions: List[Callable[[List[str]], None]] = field(default_factory=list)
    on_enabled_plugins: List[Callable[[List[str]], None]] = field(default_factory=list)
    on_transcript_error: List[Callable[[bool], None]] = field(default_factory=list)
    on_my_prompts: List[Callable[[List[str], bool], None]] = field(default_factory=list)

    def fire_transcript(self, messages: List[ChatMessage], in_progress: bool) -> None:
        for hook in list(self.on_transcript):
            hook(messages, in_progress)

    def fire_history(self, history: UserLocalHistory) -> None:
        for hook in list(self.on_history):
            hook(history)

    def fire_error(self, message: str) -> None:
        for hook in list(self.on_error):
            hook(message)

    def fire_suggestions(self, suggestions: List[str]) -> None:
        for hook in list(self.on_suggestions):
            hook(suggestions)

    def fire_enabled_plugins(self, names: List[str]) -> None:
        for hook in list(self.on_enabled_plugins):
            hook(names)

    def fire_transcript_error(self, has_error: bool) -> None:
        for hook in list(self.on_transcript_error):
            hook(has_error)

    def fire_my_prompts(self, names: List[str], enabled: bool) -> None:
        for hook in list(self.on_my_prompts):
            hook(names, enabled)
