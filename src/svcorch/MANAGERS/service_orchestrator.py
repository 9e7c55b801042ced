# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration for multiple services, managing dependencies and readiness.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

from ..MODELS.orchestration_config import OrchestrationConfig, OrchestratorSettings
from ..MODELS.runtime_state import Phase, RuntimeState
from ..MODELS.service_definition import ServiceSpec
from ..REGISTRY.service_registry import ServiceRegistry
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.launch_command import LaunchCommandBuilder
from ..errors import LaunchError, StartupAbortedError, TeardownErrors
from .network_manager import NetworkManager
from .process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

SupervisorFactory = Callable[[ServiceSpec], ProcessSupervisor]


class ServiceOrchestrator:
    """
    Starts a registry of services in dependency order and tears them down in
    reverse.

    One ProcessSupervisor per service. The orchestrator issues start and stop
    commands and reads RuntimeState; it never writes it.
    """
    def __init__(self,
                 registry: ServiceRegistry,
                 settings: Optional[OrchestratorSettings] = None,
                 base_dir: str = ".",
                 supervisor_factory: Optional[SupervisorFactory] = None):
        """
        Initializes the orchestrator.

        :param registry: Declarations of all services.
        :param settings: Orchestrator tunables.
        :param base_dir: Project directory for state and relative paths.
        :param supervisor_factory: Creates the supervisor for a service;
            defaults to a ProcessSupervisor.
        """
        self.registry = registry
        self.settings = settings or OrchestratorSettings()
        self.base_dir = base_dir
        self.resolver = DependencyResolver()
        self.network_manager = NetworkManager(self.settings.project_name, self.settings.docker_binary)
        self.supervisor_factory = supervisor_factory or self._default_supervisor
        self.supervisors: Dict[str, ProcessSupervisor] = {}
        self._start_order: List[str] = []
        self.already_running: List[str] = []
        self._shutdown = threading.Event()

    @classmethod
    def from_config(cls, config: OrchestrationConfig) -> "ServiceOrchestrator":
        """
        Builds and validates the registry from a parsed compose file.
        """
        registry = ServiceRegistry.from_specs(config.services)
        return cls(registry, config.settings, base_dir=config.base_dir)

    def start_all(self) -> List[str]:
        """
        Starts every service in dependency order, waiting for each to become
        Ready before starting the next.

        Services that already started are left running if startup aborts;
        call ``stop_all`` to clean up. Services still running from an earlier
        detached ``start_all`` are adopted rather than launched again and are
        listed in ``already_running``.

        :return: The start order.
        :raises CyclicDependencyError: Before anything is launched.
        :raises LaunchError: If the project network cannot be created.
        :raises StartupAbortedError: Naming the service that failed.
        """
        order = self.resolver.resolve(self.registry)
        self._start_order = order
        self.already_running = []
        self._shutdown.clear()
        logger.info("Starting services in order: %s", ", ".join(order))

        if any(self.registry.get(name).launch_target.is_image for name in order):
            self.network_manager.ensure_network()

        for name in order:
            self._await_dependencies(name)
            if self._shutdown.is_set():
                raise StartupAbortedError(name, "shutdown requested")

            supervisor = self._supervisor_for(name)
            supervisor.start()
            if supervisor.adopted:
                self.already_running.append(name)
            state = supervisor.wait_settled(cancel=self._shutdown)
            if self._shutdown.is_set():
                raise StartupAbortedError(name, "shutdown requested")
            if state.phase is not Phase.READY:
                raise StartupAbortedError(name, state.last_error)

        logger.info("All %d services ready", len(order))
        return order

    def stop_all(self) -> List[str]:
        """
        Stops every supervised service in the reverse of the start order,
        whatever its phase.

        Backoff and probe loops of all supervisors are cancelled before the
        first stop. Errors do not interrupt the teardown.

        :return: Names in the order they were stopped.
        :raises TeardownErrors: With every error encountered.
        """
        self._shutdown.set()
        for supervisor in self.supervisors.values():
            supervisor.cancel()

        order = self._start_order or self.resolver.resolve(self.registry)
        errors: Dict[str, Exception] = {}
        stopped = []
        for name in reversed(order):
            supervisor = self.supervisors.get(name)
            if supervisor is None:
                continue
            logger.info("Stopping service: %s", name)
            try:
                supervisor.stop()
            except Exception as e:
                logger.error("Failed to stop %s: %s", name, e)
                errors[name] = e
            stopped.append(name)

        try:
            self.network_manager.remove_network()
        except (RuntimeError, LaunchError) as e:
            logger.error("%s", e)
            errors["network"] = e

        if errors:
            raise TeardownErrors(errors)
        return stopped

    def status(self) -> Dict[str, Phase]:
        """
        Returns the phase of every service. Services without a supervisor
        report Pending. Never blocks.
        """
        return {name: state.phase for name, state in self.states().items()}

    def states(self) -> Dict[str, RuntimeState]:
        """
        Returns the RuntimeState snapshot of every service. Never blocks.
        """
        snapshot = {}
        for name in self.registry.names():
            supervisor = self.supervisors.get(name)
            snapshot[name] = supervisor.state if supervisor is not None else RuntimeState()
        return snapshot

    def attach_all(self) -> List[str]:
        """
        Adopts processes left running by a detached ``start_all`` in another
        process, so they can be reported and stopped from this one.

        Only services found running get a supervisor, so a following
        ``stop_all`` reports just those.

        :return: Names of the services found running.
        """
        attached = []
        if any(s.launch_target.is_image for s in self.registry):
            try:
                self.network_manager.adopt_network()
            except LaunchError as e:
                logger.warning("%s", e)
        for name in self.resolver.resolve(self.registry):
            supervisor = self.supervisors.get(name) or self.supervisor_factory(self.registry.get(name))
            if supervisor.attach():
                self.supervisors[name] = supervisor
                attached.append(name)
        return attached

    def request_shutdown(self):
        """
        Makes an in-progress ``start_all`` abort at its next wait and cancels
        supervisor backoff. Safe to call from a signal handler.
        """
        self._shutdown.set()
        for supervisor in list(self.supervisors.values()):
            supervisor.cancel()

    def _await_dependencies(self, name: str):
        """
        Blocks until every dependency of ``name`` has settled.

        :raises StartupAbortedError: Naming a dependency that is not Ready.
        """
        for dep in self.registry.get(name).depends_on:
            supervisor = self.supervisors.get(dep)
            state = supervisor.wait_settled(cancel=self._shutdown) if supervisor else RuntimeState()
            if state.phase is not Phase.READY and not self._shutdown.is_set():
                reason = f"dependency of {name} is {state.phase.value}"
                if state.last_error:
                    reason += f": {state.last_error}"
                raise StartupAbortedError(dep, reason)

    def _supervisor_for(self, name: str) -> ProcessSupervisor:
        supervisor = self.supervisors.get(name)
        if supervisor is None:
            supervisor = self.supervisor_factory(self.registry.get(name))
            self.supervisors[name] = supervisor
        return supervisor

    def _default_supervisor(self, spec: ServiceSpec) -> ProcessSupervisor:
        network = None
        if any(s.launch_target.is_image for s in self.registry):
            network = self.network_manager.network_name
        launcher = LaunchCommandBuilder(self.settings.project_name, network, self.settings.docker_binary)
        return ProcessSupervisor(
            spec,
            self.settings,
            base_dir=self.base_dir,
            extra_env=self.network_manager.get_service_discovery_env(self.registry),
            launcher=launcher,
            network_manager=self.network_manager,
        )
