"""Catalogs of registered actions and workflow definitions.

Both registries are built once at process start, then frozen and handed to
the engine by reference. After ``freeze()`` any further registration raises
``RuntimeError``.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Mapping

from ..errors import DuplicateWorkflow, InvalidDefinition, UnknownWorkflow
from .models import RetryPolicy, StepDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)

Action = Callable[..., Any]


class ActionRegistry:
    """Named forward and compensation actions supplied by collaborators.

    An action is called as ``fn(context, idempotency_key)`` and may be a
    coroutine function or a plain callable.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}
        self._frozen = False

    def register(self, name: str, fn: Action) -> Action:
        if self._frozen:
            raise RuntimeError("ActionRegistry is frozen")
        if name in self._actions:
            raise InvalidDefinition(f"Action {name!r} is already registered")
        self._actions[name] = fn
        logger.debug(f"Registered action {name}")
        return fn

    def action(self, name: str) -> Callable[[Action], Action]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Action) -> Action:
            return self.register(name, fn)

        return decorator

    def get(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise InvalidDefinition(f"Action {name!r} is not registered") from None

    def freeze(self) -> None:
        self._frozen = True

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[str]:
        return iter(self._actions)


class WorkflowRegistry:
    """Catalog of workflow definitions validated against an action registry."""

    def __init__(self, actions: ActionRegistry) -> None:
        self.actions = actions
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._frozen = False

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Add ``definition`` to the catalog.

        Raises:
            DuplicateWorkflow: a workflow with the same name exists.
            InvalidDefinition: no steps, duplicate step names, or a step
                references an action that is not registered.
        """
        if self._frozen:
            raise RuntimeError("WorkflowRegistry is frozen")
        if definition.name in self._definitions:
            raise DuplicateWorkflow(definition.name)
        self._validate(definition)
        self._definitions[definition.name] = definition
        logger.info(
            f"Registered workflow {definition.name} with steps {definition.step_names()}"
        )
        return definition

    def _validate(self, definition: WorkflowDefinition) -> None:
        if not definition.steps:
            raise InvalidDefinition(f"Workflow {definition.name!r} has no steps")

        seen: set[str] = set()
        for step in definition.steps:
            if step.name in seen:
                raise InvalidDefinition(
                    f"Workflow {definition.name!r} has duplicate step {step.name!r}"
                )
            seen.add(step.name)

            if step.action not in self.actions:
                raise InvalidDefinition(
                    f"Step {step.name!r} of {definition.name!r} references "
                    f"undefined action {step.action!r}"
                )
            if step.compensation is not None and step.compensation not in self.actions:
                raise InvalidDefinition(
                    f"Step {step.name!r} of {definition.name!r} references "
                    f"undefined compensation {step.compensation!r}"
                )

    def lookup(self, name: str) -> WorkflowDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownWorkflow(name) from None

    def names(self) -> list[str]:
        return list(self._definitions)

    def freeze(self) -> None:
        """Make this registry and its action registry read-only."""
        self._frozen = True
        self.actions.freeze()

    @property
    def definitions(self) -> Mapping[str, WorkflowDefinition]:
        return MappingProxyType(self._definitions)


__all__ = [
    "Action",
    "ActionRegistry",
    "RetryPolicy",
    "StepDefinition",
    "WorkflowDefinition",
    "WorkflowRegistry",
]
