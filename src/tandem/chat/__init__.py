from tandem.chat.formatting import extract_suggestions, reformat_bot_message
from tandem.chat.multiplexer import ResponseMultiplexer, ResponseSubscriber
from tandem.chat.transport import ChatClient, ChatError, CompletionTask

__all__ = [
    "ChatClient",
    "ChatError",
    "CompletionTask",
    "ResponseMultiplexer",
    "ResponseSubscriber",
    "extract_suggestions",
    "reformat_bot_message",
]
