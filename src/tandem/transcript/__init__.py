from tandem.transcript.interaction import Interaction
from tandem.transcript.messages import (
    ChatMessage,
    ContextFile,
    ContextMessage,
    InteractionMessage,
    Message,
    PluginExecutionInfo,
    TranscriptJSON,
    UserLocalHistory,
)
from tandem.transcript.transcript import PromptResult, Transcript

__all__ = [
    "ChatMessage",
    "ContextFile",
    "ContextMessage",
    "Interaction",
    "InteractionMessage",
    "Message",
    "PluginExecutionInfo",
    "PromptResult",
    "Transcript",
    "TranscriptJSON",
    "UserLocalHistory",
]
