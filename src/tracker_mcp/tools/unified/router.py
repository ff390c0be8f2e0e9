"""Action routing for unified tools.

A unified tool takes an ``action`` argument and forwards the remaining
arguments to the handler registered for that action.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

ActionHandler = Callable[..., dict]


@dataclass(frozen=True)
class ActionDefinition:
    """One action exposed by a unified tool."""

    name: str
    handler: ActionHandler
    summary: str = ""
    aliases: Tuple[str, ...] = field(default_factory=tuple)


class ActionRouterError(ValueError):
    """Raised when an action name is not registered."""

    def __init__(self, message: str, *, allowed_actions: Sequence[str]):
        super().__init__(message)
        self.allowed_actions = tuple(allowed_actions)


def _normalize(action: str) -> str:
    return action.strip().lower().replace("_", "-")


class ActionRouter:
    """Maps action names and aliases to handlers."""

    def __init__(self, *, tool_name: str, actions: Iterable[ActionDefinition]):
        self.tool_name = tool_name
        self._definitions: Dict[str, ActionDefinition] = {}
        self._lookup: Dict[str, ActionDefinition] = {}
        for definition in actions:
            if definition.name in self._definitions:
                raise ValueError(
                    f"Duplicate action '{definition.name}' for tool '{tool_name}'"
                )
            self._definitions[definition.name] = definition
            for key in (definition.name, *definition.aliases):
                self._lookup[_normalize(key)] = definition

    @property
    def allowed_actions(self) -> Tuple[str, ...]:
        return tuple(self._definitions)

    def describe(self) -> Dict[str, str]:
        return {name: d.summary for name, d in self._definitions.items()}

    def resolve(self, action: Optional[str]) -> ActionDefinition:
        definition = (
            self._lookup.get(_normalize(action)) if isinstance(action, str) else None
        )
        if definition is None:
            raise ActionRouterError(
                f"Unsupported {self.tool_name} action '{action}'",
                allowed_actions=self.allowed_actions,
            )
        return definition

    def dispatch(self, *, action: Optional[str], **kwargs: Any) -> dict:
        return self.resolve(action).handler(**kwargs)
