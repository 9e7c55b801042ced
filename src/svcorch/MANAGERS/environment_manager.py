"""
Managers for handling environment variables and .env file resolution.
"""
import os
from typing import Dict, Optional

from dotenv import dotenv_values

from ..MODELS.service_definition import ServiceSpec
from ..errors import LaunchError


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def service_environment(self, spec: ServiceSpec) -> Dict[str, str]:
        """
        Variables declared for the service: its env files (later files
        override earlier ones), then its explicit environment.

        :raises LaunchError: If an env file does not exist.
        """
        env: Dict[str, str] = {}
        for env_file in spec.env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                raise LaunchError(f"{spec.name}: env file {file_path} not found")
            env.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})
        env.update(spec.env)
        return env

    def process_environment(self,
                            service_env: Dict[str, str],
                            extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        The full environment for the launched process: the orchestrator's own
        environment, then extra variables (service discovery), then the
        service's variables, which override everything.
        """
        merged_env = os.environ.copy()
        if extra_env:
            merged_env.update(extra_env)
        merged_env.update(service_env)
        return merged_env
