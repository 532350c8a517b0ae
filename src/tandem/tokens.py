"""Token estimation and prompt budget derivation.

Token counts here are estimates. The budget keeps a fixed safety cushion
between the estimated prompt size and the model's real context limit, since
undercounting a long prompt would otherwise overflow it.
"""

import math
from typing import Callable, Iterable, Protocol

import tiktoken

SAFETY_PROMPT_TOKENS = 100
ANSWER_TOKENS = 1000
DEFAULT_MAX_TOKENS = 7000
CHARS_PER_TOKEN = 4


class HasText(Protocol):
    text: str | None


TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TiktokenCounter:
    def __init__(self, encoding_name: str = "cl100k_base"):
        self._encoding = tiktoken.get_encoding(encoding_name)

    def __call__(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


def get_token_counter(name: str) -> TokenCounter:
    if name == "tiktoken":
        return TiktokenCounter()
    return estimate_tokens


def estimate_message_tokens(message: HasText, counter: TokenCounter = estimate_tokens) -> int:
    return counter(message.text or "")


def estimate_messages_tokens(
    messages: Iterable[HasText], counter: TokenCounter = estimate_tokens
) -> int:
    return sum(estimate_message_tokens(m, counter) for m in messages)


def max_prompt_tokens(
    prompt_limit: int | None = None,
    solution_limit: int | None = None,
    server_max_tokens: int | None = None,
) -> int:
    # Local limits take precedence over what the server advertises.
    if prompt_limit and solution_limit:
        return prompt_limit - solution_limit

    reserved = (solution_limit or ANSWER_TOKENS) + SAFETY_PROMPT_TOKENS
    if server_max_tokens:
        return server_max_tokens - reserved
    return DEFAULT_MAX_TOKENS - reserved
