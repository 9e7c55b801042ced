"""
Models for overall orchestration configuration.
"""
from typing import Any, List, Mapping, Optional
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from .service_definition import ServiceSpec
from ..errors import ConfigError


class OrchestratorSettings(BaseSettings):
    """
    Tunables for the orchestrator and its supervisors.

    Each field can be set through a ``SVCORCH_``-prefixed environment
    variable, e.g. ``SVCORCH_STOP_GRACE_PERIOD=30``.
    """
    project_name: str = "default"
    state_dir: str = ".svcorch"
    stop_grace_period: float = 10.0
    max_restarts: int = Field(default=5, ge=0)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_cap: float = Field(default=60.0, ge=0)
    docker_binary: str = "docker"

    model_config = SettingsConfigDict(
        env_prefix="SVCORCH_",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def load(cls,
             overrides: Optional[Mapping[str, Any]] = None,
             env_file: Optional[str] = None) -> "OrchestratorSettings":
        """
        Builds settings from defaults, then ``SVCORCH_*`` variables in
        ``env_file``, then the process environment, then explicit overrides
        (the compose ``x-svcorch`` block).

        :param overrides: Values that take precedence over the environment.
        :param env_file: The project ``.env`` file, if there is one.
        :raises ConfigError: If a value cannot be converted.
        """
        values = {k.replace("-", "_"): v for k, v in (overrides or {}).items()}
        try:
            return cls(_env_file=env_file, **values)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}") from e


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    services: List[ServiceSpec]
    settings: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    base_dir: str = "."

    def uses_images(self) -> bool:
        return any(s.launch_target.is_image for s in self.services)
