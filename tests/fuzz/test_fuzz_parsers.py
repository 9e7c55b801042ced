import random
import string

import pytest
import yaml
from svcorch.PARSERS.compose_parser import ComposeParser
from svcorch.PARSERS.duration_parser import parse_duration
from svcorch.UTILS.string_interpolation import EnvironmentInterpolator
from svcorch.errors import ConfigError


def random_string(length):
    return ''.join(random.choice(string.printable) for _ in range(length))


def test_fuzz_compose_parser():
    parser = ComposeParser(context={})
    for _ in range(200):
        content = random_string(random.randint(0, 1000))
        try:
            parser.parse_from_string(content)
        except ConfigError:
            # Junk must be reported as a configuration error, never crash
            pass


def test_fuzz_interpolation():
    interpolator = EnvironmentInterpolator({'A': '1', 'B': ''})
    alphabet = '${}:-+?AB_x '
    for _ in range(500):
        template = ''.join(random.choice(alphabet) for _ in range(random.randint(0, 30)))
        try:
            assert isinstance(interpolator.interpolate(template), str)
        except ConfigError:
            pass


def test_fuzz_duration_parser():
    for _ in range(200):
        text = random_string(random.randint(0, 12))
        try:
            assert isinstance(parse_duration(text), float)
        except ValueError:
            pass


@pytest.mark.parametrize("service", [
    'just a string',
    ['a', 'list'],
    {},
    {'command': 'x', 'ports': ['abc']},
    {'command': 'x', 'ports': ['8000-8001:80']},
    {'command': 'x', 'ports': ['80/sctp']},
    {'command': 'x', 'ports': 5},
    {'command': 'x', 'restart': 'sometimes'},
    {'command': 'x', 'restart': 'on-failure:many'},
    {'command': 'x', 'deploy': 'swarm'},
    {'command': 'x', 'deploy': {'restart_policy': {'condition': 'maybe'}}},
    {'command': 'x', 'volumes': ['/only-one-part']},
    {'command': 'x', 'healthcheck': 'curl localhost'},
    {'command': 'x', 'healthcheck': {'test': ['CMD', 'true'], 'interval': 'soon'}},
    {'command': 'x', 'x-readiness': {'tcp': 'not-a-port'}},
    {'command': 'x', 'x-readiness': {'http': 'http://localhost/', 'retries': 0}},
    {'command': 'x', 'max_restarts': 1, 'restart': 'on-failure:-1'},
])
def test_malformed_services_are_config_errors(service):
    content = yaml.dump({'services': {'svc': service}})
    with pytest.raises(ConfigError):
        ComposeParser(context={}).parse_from_string(content)


@pytest.mark.parametrize("content", [
    "services: [a, b]",
    "- just\n- a list",
    "x-svcorch: fast\nservices: {}",
    "x-svcorch: {max_restarts: -2}\nservices: {}",
    "services:\n  a: {command: '${REQUIRED:?must be set}'}",
    "services: {a: [unclosed",
])
def test_malformed_files_are_config_errors(content):
    with pytest.raises(ConfigError):
        ComposeParser(context={}).parse_from_string(content)
