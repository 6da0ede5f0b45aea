from __future__ import annotations

import functools
import inspect
import json
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import ToolExecutionError
from .models import AgentTask

logger = logging.getLogger(__name__)

#: Runs one agent task: ``(agent_id, task_name, parameters) -> result``.
TaskRunner = Callable[[str, str, dict[str, Any]], Any]


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """A tool offered to the model.

    Attributes:
        name: Function name the model calls.
        description: Description shown to the model.
        schema: Parameter properties, name -> JSON schema fragment.
        required_params: Parameter names the model must provide.
        invoke: Callable receiving the parsed arguments.
        returns: Description of the return value appended to `description`.
        metadata: Free-form tags, e.g. the owning agent and task.
    """

    name: str
    description: str
    schema: Mapping[str, Any]
    required_params: tuple[str, ...]
    invoke: Callable[[dict[str, Any]], Any]
    returns: Any = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


def to_function_schema(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Render a descriptor as a `function` tool definition."""
    description = descriptor.description
    if descriptor.returns is not None:
        description += "\n\nReturns: " + json.dumps(descriptor.returns, indent=2)
    return {
        "type": "function",
        "function": {
            "name": descriptor.name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": dict(descriptor.schema),
                "required": list(descriptor.required_params),
            },
        },
    }


def build_agent_tools(
    agent_id: str,
    tasks: Iterable[AgentTask],
    run_task: TaskRunner,
) -> list[ToolDescriptor]:
    """Build one descriptor per agent task, named `<agent_id>_<task name>`."""
    descriptors: list[ToolDescriptor] = []
    for task in tasks:
        descriptors.append(
            ToolDescriptor(
                name=f"{agent_id}_{task.name}",
                description=task.description,
                schema=task.schema_,
                required_params=tuple(task.required_params),
                invoke=functools.partial(run_task, agent_id, task.name),
                returns=task.returns,
                metadata={"agent_id": agent_id, "task_name": task.name},
            )
        )
    return descriptors


class ToolRegistry:
    """Name-indexed set of tool descriptors with uniform dispatch.

    `execute` matches the executor signature expected by `ToolCallDispatcher`.
    """

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self.extend(descriptors)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            logger.warning("replacing tool %s", descriptor.name)
        self._tools[descriptor.name] = descriptor

    def extend(self, descriptors: Iterable[ToolDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def remove_prefix(self, prefix: str) -> None:
        """Drop every tool whose name starts with `prefix` (e.g. a removed agent)."""
        for name in [name for name in self._tools if name.startswith(prefix)]:
            del self._tools[name]

    def names(self) -> Sequence[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict[str, Any]]:
        """Function tool definitions for every registered tool."""
        return [to_function_schema(descriptor) for descriptor in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> Any:
        """Invoke the tool called `name` with `arguments`.

        Raises:
            ToolExecutionError: unknown tool, missing required parameters, or a
                failure raised by the tool itself.
        """
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolExecutionError(f"Tool not found: {name}")

        missing = [param for param in descriptor.required_params if param not in arguments]
        if missing:
            raise ToolExecutionError(f"missing required parameters for {name}: {', '.join(missing)}")

        logger.debug("calling %s with input %s", name, arguments)
        try:
            result = descriptor.invoke(arguments)
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(str(exc)) from exc
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
