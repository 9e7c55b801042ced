"""
Models for declaring services: launch targets, ports, volumes, restart policies
and readiness checks.
"""
from typing import List, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator
from enum import Enum


class RestartPolicy(str, Enum):
    """
    Whether a supervisor relaunches a service after its process exits.
    """
    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class ProbeKind(str, Enum):
    """
    How readiness is observed for a service.
    """
    PROCESS = "process"
    TCP = "tcp"
    HTTP = "http"
    COMMAND = "command"


class LaunchTarget(BaseModel):
    """
    What to run: a container image, or a local command.

    For an image target, ``command`` holds the arguments passed to the container.
    """
    model_config = ConfigDict(frozen=True)

    image: Optional[str] = None
    command: Tuple[str, ...] = ()
    entrypoint: Tuple[str, ...] = ()
    working_dir: Optional[str] = None

    @model_validator(mode="after")
    def _require_something_to_run(self) -> "LaunchTarget":
        if not self.image and not self.command and not self.entrypoint:
            raise ValueError("a launch target needs an image or a command")
        return self

    @property
    def is_image(self) -> bool:
        return bool(self.image)


class PortMapping(BaseModel):
    """
    A published port. ``host_port`` is None when the runtime picks one.
    """
    model_config = ConfigDict(frozen=True)

    host_port: Optional[int] = None
    container_port: int
    protocol: Protocol = Protocol.TCP
    host_ip: Optional[str] = None


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path and a service path.
    """
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    read_only: bool = False


class ReadinessCheck(BaseModel):
    """
    A readiness probe and the bounds on how long it is retried.

    ``retries`` bounds the number of probe attempts made while the service is
    starting; ``start_period`` is a grace delay before the first attempt.
    """
    model_config = ConfigDict(frozen=True)

    kind: ProbeKind = ProbeKind.PROCESS
    host: str = "127.0.0.1"
    port: Optional[int] = None
    url: Optional[str] = None
    test: Tuple[str, ...] = ()
    interval: float = 1.0
    timeout: float = 2.0
    retries: int = 30
    start_period: float = 0.0

    @model_validator(mode="after")
    def _check_target(self) -> "ReadinessCheck":
        if self.kind is ProbeKind.TCP and self.port is None:
            raise ValueError("a tcp readiness check needs a port")
        if self.kind is ProbeKind.HTTP and not self.url:
            raise ValueError("an http readiness check needs a url")
        if self.kind is ProbeKind.COMMAND and not self.test:
            raise ValueError("a command readiness check needs a test command")
        if self.retries < 1:
            raise ValueError("retries must be at least 1")
        return self


class ServiceSpec(BaseModel):
    """
    The immutable declaration of a single service.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    launch_target: LaunchTarget

    # Networking
    ports: Tuple[PortMapping, ...] = ()

    # Environment
    env: Dict[str, str] = Field(default_factory=dict)
    env_files: Tuple[str, ...] = ()

    # Storage
    volumes: Tuple[VolumeMount, ...] = ()

    # Lifecycle
    depends_on: Tuple[str, ...] = ()
    restart_policy: RestartPolicy = RestartPolicy.NEVER
    max_restarts: Optional[int] = None
    readiness: ReadinessCheck = Field(default_factory=ReadinessCheck)

    @model_validator(mode="after")
    def _check_restarts(self) -> "ServiceSpec":
        if self.max_restarts is not None and self.max_restarts < 0:
            raise ValueError("max_restarts cannot be negative")
        return self

    def published_tcp_ports(self) -> List[int]:
        """
        Host ports this service publishes over TCP, in declaration order.
        """
        return [
            p.host_port for p in self.ports
            if p.host_port is not None and p.protocol is Protocol.TCP
        ]
