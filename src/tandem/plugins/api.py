from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from tandem.prompts import Prompts
from tandem.transcript.messages import Message, PluginExecutionInfo

if TYPE_CHECKING:
    from tandem.chat.transport import ChatClient

logger = logging.getLogger(__name__)

PluginHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]

SELECTION_MAX_TOKENS = 300
_JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


@dataclass
class PluginFunction:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: PluginHandler


@dataclass
class Plugin:
    name: str
    description: str
    functions: list[PluginFunction] = field(default_factory=list)


@dataclass
class PluginFunctionDescriptor:
    plugin_name: str
    function: PluginFunction
    parameters: dict[str, Any]


@dataclass
class PluginRunResult:
    prompt: list[Message] = field(default_factory=list)
    execution_infos: list[PluginExecutionInfo] = field(default_factory=list)


def _describe_functions(plugins: Sequence[Plugin]) -> str:
    described = [
        {
            "name": function.name,
            "description": function.description,
            "parameters": function.parameters,
        }
        for plugin in plugins
        for function in plugin.functions
    ]
    return json.dumps(described, indent=2)


def parse_function_choices(text: str) -> list[dict[str, Any]]:
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        return []
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.debug(f"Plugin selection reply is not JSON: {text!r}")
        return []
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict) and isinstance(item.get("name"), str)]


async def choose_data_sources(
    human_input: str,
    client: ChatClient,
    plugins: Sequence[Plugin],
    previous_messages: Sequence[Message] = (),
) -> list[PluginFunctionDescriptor]:
    functions = {
        function.name: (plugin, function) for plugin in plugins for function in plugin.functions
    }
    if not functions:
        return []

    prompt = Prompts().plugin_selection.format(
        functions=_describe_functions(plugins), query=human_input
    )
    messages = [*previous_messages, Message(speaker="human", text=prompt)]
    reply = await client.complete(messages, max_tokens=SELECTION_MAX_TOKENS)

    descriptors: list[PluginFunctionDescriptor] = []
    for choice in parse_function_choices(reply):
        entry = functions.get(choice["name"])
        if entry is None:
            logger.debug(f"Model chose unknown plugin function {choice['name']!r}")
            continue
        plugin, function = entry
        parameters = choice.get("parameters")
        descriptors.append(
            PluginFunctionDescriptor(
                plugin_name=plugin.name,
                function=function,
                parameters=parameters if isinstance(parameters, dict) else {},
            )
        )
    return descriptors


async def _run_one(descriptor: PluginFunctionDescriptor, config: dict[str, Any]) -> PluginExecutionInfo:
    name = descriptor.function.name
    try:
        output = await descriptor.function.handler(descriptor.parameters, config)
    except Exception as e:
        logger.warning(f"Plugin function {name} failed: {e}")
        return PluginExecutionInfo(name=name, parameters=descriptor.parameters, error=str(e))
    return PluginExecutionInfo(name=name, parameters=descriptor.parameters, output=output)


async def run_plugin_functions(
    descriptors: Sequence[PluginFunctionDescriptor],
    config: dict[str, Any] | None = None,
) -> PluginRunResult:
    config = config or {}
    infos = list(await asyncio.gather(*(_run_one(d, config) for d in descriptors)))
    outputs = [{"name": info.name, "output": info.output} for info in infos if info.error is None]
    if not outputs:
        return PluginRunResult(execution_infos=infos)

    prompts = Prompts()
    prompt = [
        Message(
            speaker="human",
            text=prompts.plugin_results.format(results=json.dumps(outputs, indent=2, default=str)),
        ),
        Message(speaker="assistant", text=prompts.plugin_results_answer),
    ]
    return PluginRunResult(prompt=prompt, execution_infos=infos)
