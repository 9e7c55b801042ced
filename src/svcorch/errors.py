"""
Exception hierarchy for configuration, registry, resolution and lifecycle errors.
"""
from typing import Dict, Iterable, List, Optional


class OrchestrationError(Exception):
    """
    Base class for all errors raised by svcorch.
    """


class ConfigError(OrchestrationError):
    """
    The compose file or settings could not be loaded.
    """


class RegistryError(OrchestrationError):
    """
    Base class for structural errors in the service registry.
    """


class DuplicateNameError(RegistryError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service {name!r} is already registered")


class UnknownDependencyError(RegistryError):
    """
    One or more services depend on names that were never registered.

    :param missing: Mapping of service name to the unknown names it depends on.
    """
    def __init__(self, missing: Dict[str, List[str]]):
        self.missing = missing
        details = "; ".join(
            f"{name} -> {', '.join(deps)}" for name, deps in sorted(missing.items())
        )
        super().__init__(f"Unknown dependencies: {details}")


class NotFoundError(RegistryError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service {name!r} is not registered")


class RegistrySealedError(RegistryError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Cannot register {name!r}: registry is read-only after validation")


class CyclicDependencyError(OrchestrationError):
    """
    The dependency graph contains a cycle.

    :param cycle: Names of the services forming the cycle, in edge order.
    """
    def __init__(self, cycle: Iterable[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle + self.cycle[:1])}")


class LaunchError(OrchestrationError):
    """
    A service process could not be launched.
    """


class StartupAbortedError(OrchestrationError):
    """
    A service failed while the stack was being started; remaining launches were skipped.
    """
    def __init__(self, service: str, reason: Optional[str] = None):
        self.service = service
        self.reason = reason
        message = f"Startup aborted: service {service!r} failed"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class TeardownErrors(OrchestrationError):
    """
    Aggregate of the errors raised while stopping services.

    :param errors: Mapping of service name to the exception its stop raised.
    """
    def __init__(self, errors: Dict[str, Exception]):
        self.errors = dict(errors)
        details = "; ".join(f"{name}: {err}" for name, err in self.errors.items())
        super().__init__(f"{len(self.errors)} service(s) failed to stop cleanly: {details}")
