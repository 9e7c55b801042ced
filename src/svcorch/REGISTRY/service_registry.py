"""
In-memory registry of service declarations.
"""
from typing import Dict, Iterable, Iterator, List

from ..MODELS.service_definition import ServiceSpec
from ..errors import (
    DuplicateNameError,
    NotFoundError,
    RegistrySealedError,
    UnknownDependencyError,
)


class ServiceRegistry:
    """
    Holds every ServiceSpec by name.

    Populated once, validated, then read-only. Dependencies are checked by
    ``validate`` rather than on each ``register`` call, so services may be
    registered in any order.
    """
    def __init__(self):
        self._specs: Dict[str, ServiceSpec] = {}
        self._sealed = False

    @classmethod
    def from_specs(cls, specs: Iterable[ServiceSpec]) -> "ServiceRegistry":
        """
        Registers all specs, validates them and returns the sealed registry.
        """
        registry = cls()
        for spec in specs:
            registry.register(spec)
        registry.validate()
        return registry

    def register(self, spec: ServiceSpec) -> None:
        """
        Adds a service declaration.

        :raises DuplicateNameError: If the name is already registered.
        :raises RegistrySealedError: If the registry was already validated.
        """
        if self._sealed:
            raise RegistrySealedError(spec.name)
        if spec.name in self._specs:
            raise DuplicateNameError(spec.name)
        self._specs[spec.name] = spec

    def validate(self) -> None:
        """
        Checks that every dependency names a registered service, then seals
        the registry.

        :raises UnknownDependencyError: Listing every dangling dependency.
        """
        missing: Dict[str, List[str]] = {}
        for name, spec in self._specs.items():
            unknown = [dep for dep in spec.depends_on if dep not in self._specs]
            if unknown:
                missing[name] = unknown
        if missing:
            raise UnknownDependencyError(missing)
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def get(self, name: str) -> ServiceSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise NotFoundError(name) from None

    def names(self) -> List[str]:
        return list(self._specs)

    def specs(self) -> List[ServiceSpec]:
        return list(self._specs.values())

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ServiceSpec]:
        return iter(list(self._specs.values()))

    def __len__(self) -> int:
        return len(self._specs)
