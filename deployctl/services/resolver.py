from __future__ import annotations

from enum import Enum
from typing import Dict, List, Mapping

from deployctl.errors import CircularDependencyError, ConfigurationError
from deployctl.logger import get_logger
from deployctl.schemas.services import ServiceDefinition

_logger = get_logger("services.resolver")


class _Mark(Enum):
    IN_PROGRESS = 1
    DONE = 2


def resolve_order(services: Mapping[str, ServiceDefinition]) -> List[str]:
    """Return service names ordered so every dependency precedes its dependents.

    Depth-first post-order: a service is appended only after all of its
    dependencies have been appended, so the list is used as-is. Independent
    services keep the mapping's iteration order and dependencies are visited
    in their declared order, which makes the result reproducible.

    Raises CircularDependencyError when a service is reached again while it is
    still on the traversal path, and ConfigurationError when a dependency names
    a service that is not in ``services``.
    """
    marks: Dict[str, _Mark] = {}
    order: List[str] = []
    path: List[str] = []

    def visit(name: str) -> None:
        mark = marks.get(name)
        if mark is _Mark.DONE:
            return
        if mark is _Mark.IN_PROGRESS:
            cycle = path[path.index(name):] + [name]
            raise CircularDependencyError(name, cycle)

        marks[name] = _Mark.IN_PROGRESS
        path.append(name)
        for dependency in services[name].dependencies:
            if dependency not in services:
                raise ConfigurationError(
                    f"service {name} depends on undeclared service {dependency}"
                )
            visit(dependency)
        path.pop()
        marks[name] = _Mark.DONE
        order.append(name)

    for name in services:
        if name not in marks:
            visit(name)

    _logger.debug("resolver.order", "Resolved deployment order", order=",".join(order))
    return order
