"""
Translation of a service's launch target into the argv that is executed.
"""
from typing import Iterable, List, Optional

from ..MODELS.service_definition import PortMapping, ServiceSpec, VolumeMount


class LaunchCommandBuilder:
    """
    Builds the command line for a service.

    Command targets run directly. Image targets run in the foreground through
    the docker CLI, so the supervised process is the ``docker run`` client and
    stopping it stops the container.
    """
    def __init__(self,
                 project_name: str,
                 network: Optional[str] = None,
                 docker_binary: str = "docker"):
        """
        :param project_name: Prefix for container names.
        :param network: Container network shared by the project's services.
        :param docker_binary: The docker CLI to invoke.
        """
        self.project_name = project_name
        self.network = network
        self.docker_binary = docker_binary

    def container_name(self, spec: ServiceSpec) -> str:
        return f"{self.project_name}_{spec.name}"

    def build(self,
              spec: ServiceSpec,
              env_keys: Iterable[str] = (),
              volume_sources: Optional[List[str]] = None) -> List[str]:
        """
        Returns the argv for a service.

        :param spec: The service declaration.
        :param env_keys: Variables to forward into a container. Values are
            not put on the command line; ``docker run -e KEY`` reads them
            from the client's environment.
        :param volume_sources: Resolved host paths, one per ``spec.volumes`` entry.
        """
        target = spec.launch_target
        if not target.is_image:
            # ENTRYPOINT is the executable when set; CMD becomes its arguments.
            return list(target.entrypoint) + list(target.command)

        argv = [self.docker_binary, "run", "--rm", "--name", self.container_name(spec)]
        if self.network:
            argv += ["--network", self.network, "--network-alias", spec.name]
        for port in spec.ports:
            argv += ["-p", self._port_arg(port)]
        for key in sorted(env_keys):
            argv += ["-e", key]
        sources = volume_sources or [v.source for v in spec.volumes]
        for mount, source in zip(spec.volumes, sources):
            argv += ["-v", self._volume_arg(mount, source)]
        if target.working_dir:
            argv += ["-w", target.working_dir]
        if target.entrypoint:
            argv += ["--entrypoint", target.entrypoint[0]]
        argv.append(target.image)
        argv += list(target.entrypoint[1:]) + list(target.command)
        return argv

    def _port_arg(self, port: PortMapping) -> str:
        container = f"{port.container_port}/{port.protocol.value}"
        if port.host_port is None:
            return container
        if port.host_ip:
            return f"{port.host_ip}:{port.host_port}:{container}"
        return f"{port.host_port}:{container}"

    def _volume_arg(self, mount: VolumeMount, source: str) -> str:
        arg = f"{source}:{mount.target}"
        if mount.read_only:
            arg += ":ro"
        return arg
