"""
Network management for services: port conflict checks, service discovery
variables and the shared container network.
"""
import logging
import subprocess
from typing import Dict, Iterable, List

from ..MODELS.service_definition import ServiceSpec
from ..UTILS.ports import is_port_free
from ..errors import LaunchError

logger = logging.getLogger(__name__)


class NetworkManager:
    """
    Manages network-related aspects like port checks and service discovery.
    """
    def __init__(self, project_name: str, docker_binary: str = "docker"):
        """
        :param project_name: Used to name the container network.
        :param docker_binary: The docker CLI to invoke.
        """
        self.project_name = project_name
        self.docker_binary = docker_binary
        self.network_created = False

    @property
    def network_name(self) -> str:
        return f"{self.project_name}_default"

    def check_ports(self, spec: ServiceSpec):
        """
        Fails if a TCP host port the service publishes is already taken.

        :raises LaunchError: Naming the first port in use.
        """
        for port in spec.published_tcp_ports():
            if not is_port_free(port):
                raise LaunchError(f"Port {port} is already in use, cannot start service {spec.name}")

    def get_service_discovery_env(self, services: Iterable[ServiceSpec]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        for spec in services:
            prefix = spec.name.upper().replace('-', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"
            ports = spec.published_tcp_ports()
            if ports:
                env[f"{prefix}_PORT"] = str(ports[0])
        return env

    def ensure_network(self):
        """
        Creates the project's container network unless it already exists.

        :raises LaunchError: If the docker CLI fails.
        """
        inspect = self._docker(["network", "inspect", self.network_name])
        if inspect.returncode == 0:
            return
        logger.info("Creating network %s", self.network_name)
        create = self._docker(["network", "create", self.network_name])
        if create.returncode != 0:
            raise LaunchError(f"Cannot create network {self.network_name}: {create.stderr.strip()}")
        self.network_created = True

    def adopt_network(self) -> bool:
        """
        Takes ownership of an existing project network, so that a teardown
        from another process removes it.
        """
        if self._docker(["network", "inspect", self.network_name]).returncode == 0:
            self.network_created = True
        return self.network_created

    def remove_network(self):
        """
        Removes the container network if this process created it.

        :raises RuntimeError: If the docker CLI fails.
        """
        if not self.network_created:
            return
        result = self._docker(["network", "rm", self.network_name])
        if result.returncode != 0:
            raise RuntimeError(f"Cannot remove network {self.network_name}: {result.stderr.strip()}")
        self.network_created = False

    def _docker(self, args: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.docker_binary] + args,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise LaunchError(f"{self.docker_binary} {' '.join(args)} failed: {e}") from e
