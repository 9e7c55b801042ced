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
Parsers for Docker Compose YAML files.
"""
import logging
import os
import re
import shlex
from typing import Dict, Any, List, Optional, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.orchestration_config import OrchestrationConfig, OrchestratorSettings
from ..MODELS.service_definition import (
    LaunchTarget,
    PortMapping,
    ProbeKind,
    Protocol,
    ReadinessCheck,
    RestartPolicy,
    ServiceSpec,
    VolumeMount,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..errors import ConfigError
from .duration_parser import parse_duration

logger = logging.getLogger(__name__)

_RESTART_VALUES = {
    'no': RestartPolicy.NEVER,
    'never': RestartPolicy.NEVER,
    'always': RestartPolicy.ALWAYS,
    'unless-stopped': RestartPolicy.ALWAYS,
    'on-failure': RestartPolicy.ON_FAILURE,
}

# deploy.restart_policy.condition
_DEPLOY_CONDITIONS = {
    'none': RestartPolicy.NEVER,
    'on-failure': RestartPolicy.ON_FAILURE,
    'any': RestartPolicy.ALWAYS,
}

_HEALTHCHECK_DURATIONS = ('interval', 'timeout', 'start_period')


def normalize_project_name(name: str) -> str:
    """
    Lowercases a project name and drops characters compose does not allow.
    """
    return re.sub(r'[^a-z0-9_-]', '', name.lower()) or 'default'


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: A dictionary of environment variables for interpolation.
        """
        self.context = dict(os.environ) if context is None else dict(context)

    def parse(self, compose_path: str, project_name: Optional[str] = None) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        A ``.env`` file next to the compose file supplies interpolation
        variables; the process environment takes precedence over it.

        :param compose_path: Path to the compose file.
        :param project_name: Overrides the project name.
        :return: Parsed configuration.
        :raises ConfigError: If the file is missing or invalid.
        """
        base_dir = os.path.dirname(os.path.abspath(compose_path))
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigError(f"Cannot read compose file {compose_path}: {e}") from e

        dotenv_path = os.path.join(base_dir, '.env')
        if os.path.exists(dotenv_path):
            file_vars = {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}
            self.context = {**file_vars, **self.context}
        else:
            dotenv_path = None

        return self.parse_from_string(content, base_dir=base_dir, project_name=project_name,
                                      env_file=dotenv_path)

    def parse_from_string(self,
                          content: str,
                          base_dir: str = ".",
                          project_name: Optional[str] = None,
                          env_file: Optional[str] = None) -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :param project_name: Overrides the project name.
        :param env_file: A ``.env`` file that may also hold ``SVCORCH_*`` settings.
        :return: Parsed configuration.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("The compose file must contain a mapping")

        interpolator = EnvironmentInterpolator(self.context)
        data = interpolator.interpolate_tree(data)
        for name in interpolator.missing:
            logger.warning("The %s variable is not set. Defaulting to a blank string.", name)

        service_block = data.get('services') or {}
        if not isinstance(service_block, dict):
            raise ConfigError("'services' must be a mapping of service names to definitions")
        services = []
        for name, spec in service_block.items():
            services.append(self._parse_service(str(name), spec or {}))

        options = data.get('x-svcorch') or {}
        if not isinstance(options, dict):
            raise ConfigError("'x-svcorch' must be a mapping of settings")
        overrides = dict(options)
        if project_name:
            overrides['project_name'] = project_name
        elif 'project_name' not in overrides:
            overrides['project_name'] = data.get('name') or os.path.basename(os.path.abspath(base_dir))
        overrides['project_name'] = normalize_project_name(str(overrides['project_name']))

        return OrchestrationConfig(
            services=services,
            settings=OrchestratorSettings.load(overrides, env_file=env_file),
            base_dir=os.path.abspath(base_dir),
        )

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceSpec:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service definition mapping from the compose file.
        :return: A ServiceSpec instance.
        """
        if not isinstance(spec, dict):
            raise ConfigError(f"Service {name!r} must be a mapping")
        try:
            restart_policy, max_restarts = self._parse_restart(spec)
            ports = tuple(self._parse_port(p) for p in spec.get('ports') or [])
            launch_target = LaunchTarget(
                image=spec.get('image') or None,
                command=tuple(self._to_argv(spec.get('command'))),
                entrypoint=tuple(self._to_argv(spec.get('entrypoint'))),
                working_dir=spec.get('working_dir'),
            )
            return ServiceSpec(
                name=name,
                launch_target=launch_target,
                ports=ports,
                env=self._parse_environment(spec.get('environment')),
                env_files=tuple(self._parse_env_files(spec.get('env_file'))),
                volumes=tuple(self._parse_volume(v) for v in spec.get('volumes') or []),
                depends_on=tuple(self._parse_depends_on(spec.get('depends_on'))),
                restart_policy=restart_policy,
                max_restarts=max_restarts,
                readiness=self._parse_readiness(spec, ports),
            )
        except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
            raise ConfigError(f"Invalid service {name!r}: {e}") from e

    def _parse_restart(self, spec: Dict[str, Any]) -> Tuple[RestartPolicy, Optional[int]]:
        """
        Reads ``restart`` (``on-failure:N`` sets the retry cap) and
        ``deploy.restart_policy``, which wins when both are present.
        """
        policy = RestartPolicy.NEVER
        max_restarts = None

        restart = spec.get('restart')
        if restart is False:
            # YAML 1.1 reads an unquoted `no` as a boolean
            restart = 'no'
        if restart is not None:
            value = str(restart).strip().lower()
            if value.startswith('on-failure:'):
                value, count = value.split(':', 1)
                max_restarts = int(count)
            if value not in _RESTART_VALUES:
                raise ValueError(f"unknown restart policy {restart!r}")
            policy = _RESTART_VALUES[value]

        deploy_policy = (spec.get('deploy') or {}).get('restart_policy') or {}
        if 'condition' in deploy_policy:
            condition = str(deploy_policy['condition']).lower()
            if condition not in _DEPLOY_CONDITIONS:
                raise ValueError(f"unknown restart condition {condition!r}")
            policy = _DEPLOY_CONDITIONS[condition]
        if 'max_attempts' in deploy_policy:
            max_restarts = int(deploy_policy['max_attempts'])

        return policy, max_restarts

    def _parse_port(self, port: Any) -> PortMapping:
        """
        Parses the short (``[ip:][host:]container[/proto]``) and long port syntaxes.
        """
        if isinstance(port, dict):
            published = port.get('published')
            return PortMapping(
                host_port=int(published) if published not in (None, '') else None,
                container_port=int(port['target']),
                protocol=Protocol(port.get('protocol', 'tcp')),
                host_ip=port.get('host_ip'),
            )
        if isinstance(port, int):
            return PortMapping(container_port=port)

        text = str(port).strip()
        protocol = Protocol.TCP
        if '/' in text:
            text, proto = text.rsplit('/', 1)
            protocol = Protocol(proto.lower())
        if '-' in text:
            raise ValueError(f"port ranges are not supported: {port!r}")

        parts = text.rsplit(':', 2)
        host_ip = None
        host_port = None
        if len(parts) == 3:
            host_ip, host, container = parts
            host_port = int(host) if host else None
        elif len(parts) == 2:
            host, container = parts
            host_port = int(host)
        else:
            container = parts[0]
        return PortMapping(
            host_port=host_port,
            container_port=int(container),
            protocol=protocol,
            host_ip=host_ip or None,
        )

    def _parse_volume(self, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount(
                source=volume['source'],
                target=volume['target'],
                read_only=bool(volume.get('read_only', False)),
            )
        parts = str(volume).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only='ro' in parts[2].split(','))
        raise ValueError(f"volumes need a source and a target: {volume!r}")

    def _parse_environment(self, env_spec: Any) -> Dict[str, str]:
        """
        Accepts the mapping and the ``KEY=VALUE`` list forms. A key without a
        value is taken from the interpolation context, or dropped if unset.
        """
        environment: Dict[str, str] = {}
        if not env_spec:
            return environment
        if isinstance(env_spec, dict):
            items = list(env_spec.items())
        else:
            items = []
            for entry in env_spec:
                key, sep, value = str(entry).partition('=')
                items.append((key, value if sep else None))

        for key, value in items:
            if value is None:
                if key in self.context:
                    environment[key] = self.context[key]
                continue
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            environment[str(key)] = str(value)
        return environment

    def _parse_env_files(self, env_file: Any) -> List[str]:
        paths = []
        for entry in self._to_list(env_file):
            paths.append(entry['path'] if isinstance(entry, dict) else str(entry))
        return paths

    def _parse_depends_on(self, depends_on: Any) -> List[str]:
        if isinstance(depends_on, dict):
            return list(depends_on.keys())
        return [str(d) for d in self._to_list(depends_on)]

    def _parse_readiness(self, spec: Dict[str, Any], ports: Tuple[PortMapping, ...]) -> ReadinessCheck:
        """
        Picks the readiness check: ``x-readiness``, then ``healthcheck``, then
        a TCP check on the first published TCP port, then process liveness.
        """
        custom = spec.get('x-readiness')
        if custom:
            return self._parse_custom_readiness(custom)

        healthcheck = spec.get('healthcheck')
        if healthcheck and not healthcheck.get('disable'):
            test = healthcheck.get('test')
            if isinstance(test, str):
                test = ['CMD-SHELL', test]
            if test and test[0] != 'NONE':
                options = self._timing_options(healthcheck)
                return ReadinessCheck(kind=ProbeKind.COMMAND, test=tuple(test), **options)

        for port in ports:
            if port.host_port is not None and port.protocol is Protocol.TCP:
                host = port.host_ip if port.host_ip not in (None, '0.0.0.0') else '127.0.0.1'
                return ReadinessCheck(kind=ProbeKind.TCP, host=host, port=port.host_port)
        return ReadinessCheck(kind=ProbeKind.PROCESS)

    def _parse_custom_readiness(self, custom: Dict[str, Any]) -> ReadinessCheck:
        options = self._timing_options(custom)
        if 'http' in custom:
            return ReadinessCheck(kind=ProbeKind.HTTP, url=custom['http'], **options)
        if 'tcp' in custom:
            target = custom['tcp']
            if isinstance(target, dict):
                return ReadinessCheck(kind=ProbeKind.TCP, host=target.get('host', '127.0.0.1'),
                                      port=int(target['port']), **options)
            return ReadinessCheck(kind=ProbeKind.TCP, port=int(target), **options)
        if 'command' in custom:
            test = custom['command']
            if isinstance(test, str):
                test = ['CMD-SHELL', test]
            return ReadinessCheck(kind=ProbeKind.COMMAND, test=tuple(test), **options)
        return ReadinessCheck(kind=ProbeKind.PROCESS, **options)

    def _timing_options(self, block: Dict[str, Any]) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        for key in _HEALTHCHECK_DURATIONS:
            if key in block:
                options[key] = parse_duration(block[key])
        if 'retries' in block:
            options['retries'] = int(block['retries'])
        return options

    def _to_argv(self, val: Any) -> List[str]:
        """
        Splits a string command the way a shell would; lists are kept as is.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    def _to_list(self, val: Any) -> List[Any]:
        """
        Helper to ensure a value is a list.

        :param val: The value to convert.
        :return: A list.
        """
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            return [val]
        return list(val)
