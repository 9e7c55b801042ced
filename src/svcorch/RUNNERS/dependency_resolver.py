"""
Dependency resolution for services to determine startup and shutdown order.
"""
import heapq
from typing import Dict, List, Set

from ..REGISTRY.service_registry import ServiceRegistry
from ..errors import CyclicDependencyError


class DependencyResolver:
    """
    Resolves the startup order of services based on their dependencies.
    Shutdown order is the reverse.
    """
    def resolve(self, registry: ServiceRegistry) -> List[str]:
        """
        Orders services so that each appears after all of its dependencies.

        Kahn's algorithm; when several services are ready to be placed, the
        lexicographically smallest name goes first, so the order is the same
        for the same registry.

        :param registry: The validated service registry.
        :return: Service names in the order they should be started.
        :raises CyclicDependencyError: If the dependencies contain a cycle.
        :raises UnknownDependencyError: If the registry was not validated and
            a dependency is not registered.
        """
        if not registry.sealed:
            registry.validate()

        remaining: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {name: [] for name in registry.names()}
        for spec in registry:
            deps = set(spec.depends_on)
            remaining[spec.name] = len(deps)
            for dep in deps:
                dependents[dep].append(spec.name)

        ready = [name for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)

        ordered = []
        while ready:
            name = heapq.heappop(ready)
            ordered.append(name)
            for dependent in dependents[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(ordered) != len(remaining):
            stuck = {name for name, count in remaining.items() if count > 0}
            raise CyclicDependencyError(self._find_cycle(registry, stuck))
        return ordered

    def _find_cycle(self, registry: ServiceRegistry, stuck: Set[str]) -> List[str]:
        """
        Extracts one concrete cycle from the services Kahn could not place.

        Every stuck service has at least one stuck dependency, so following
        such edges from any stuck service must revisit a node.
        """
        path: List[str] = []
        seen: Dict[str, int] = {}
        name = min(stuck)
        while name not in seen:
            seen[name] = len(path)
            path.append(name)
            name = min(dep for dep in registry.get(name).depends_on if dep in stuck)
        return path[seen[name]:]
