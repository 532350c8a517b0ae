import warnings
from typing import Any, AsyncIterator

import litellm
from litellm import acompletion as litellm_acompletion

warnings.filterwarnings("ignore", message="Pydantic serializer warnings")
litellm.drop_params = True


async def acompletion(
    model: str,
    messages: list[dict],
    stream: bool = False,
    temperature: float = 0.0,
    max_tokens: int = 1000,
    **kwargs,
) -> Any:
    params = {
        "model": model,
        "messages": messages,
        "stream": stream,
        "temperature": temperature,
        "max_tokens": max_tokens,
        **kwargs,
    }
    return await litellm_acompletion(**params)


async def stream_text(
    model: str,
    messages: list[dict],
    temperature: float = 0.0,
    max_tokens: int = 1000,
    **kwargs,
) -> AsyncIterator[str]:
    response = await acompletion(
        model=model,
        messages=messages,
        stream=True,
        temperature=temperature,
        max_tokens=max_tokens,
        **kwargs,
    )
    async for chunk in response:
        delta = chunk.choices[0].delta
        if hasattr(delta, "content") and delta.content:
            yield delta.content


async def complete_text(
    model: str,
    messages: list[dict],
    temperature: float = 0.0,
    max_tokens: int = 1000,
    **kwargs,
) -> str:
    response = await acompletion(
        model=model,
        messages=messages,
        stream=False,
        temperature=temperature,
        max_tokens=max_tokens,
        **kwargs,
    )
    return response.choices[0].message.content or ""
