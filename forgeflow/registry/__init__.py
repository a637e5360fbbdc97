"""Registry of workflow definitions known to this process."""

from __future__ import annotations

from typing import Dict, Iterator, Optional

from ..contracts import WorkflowDefinition
from ..errors import UnknownWorkflowError


class WorkflowRegistry:
    """Name-indexed collection of :class:`WorkflowDefinition` objects."""

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition, replace: bool = False) -> None:
        if definition.name in self._definitions and not replace:
            raise ValueError(f"Workflow '{definition.name}' is already registered")
        self._definitions[definition.name] = definition

    def get(self, name: str) -> Optional[WorkflowDefinition]:
        return self._definitions.get(name)

    def require(self, name: str) -> WorkflowDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise UnknownWorkflowError(f"No workflow registered as '{name}'")
        return definition

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._definitions.values())


# Process-wide registry. The mint and forge definitions add themselves when
# ``forgeflow.workflows`` is imported.
REGISTRY = WorkflowRegistry()


def register_workflow(
    definition: WorkflowDefinition, registry: Optional[WorkflowRegistry] = None
) -> WorkflowDefinition:
    """Add ``definition`` to ``registry`` (default ``REGISTRY``), replacing any
    definition with the same name."""

    (registry or REGISTRY).register(definition, replace=True)
    return definition


__all__ = ["WorkflowRegistry", "REGISTRY", "register_workflow"]
