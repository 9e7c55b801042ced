"""
Readiness probes: single checks that tell whether a started service can
accept work, as opposed to merely having a live process.
"""
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ..MODELS.service_definition import ProbeKind, ReadinessCheck
from ..RUNNERS.process_runner import ProcessRunner
from ..UTILS.ports import is_port_open


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one readiness check."""

    ok: bool
    detail: str = ""


Probe = Callable[[], ProbeResult]


def process_probe(runner: ProcessRunner) -> Probe:
    def check() -> ProbeResult:
        if runner.is_running():
            return ProbeResult(True, "process running")
        return ProbeResult(False, "process not running")
    return check


def tcp_probe(host: str, port: int, timeout: float) -> Probe:
    def check() -> ProbeResult:
        if is_port_open(host, port, timeout=timeout):
            return ProbeResult(True, f"{host}:{port} accepting connections")
        return ProbeResult(False, f"{host}:{port} not accepting connections")
    return check


def http_probe(url: str, timeout: float) -> Probe:
    """
    GET the url; any 2xx or 3xx response counts as ready.
    """
    def check() -> ProbeResult:
        try:
            with urlopen(Request(url, method="GET"), timeout=timeout) as response:
                return ProbeResult(True, f"HTTP {response.status}")
        except HTTPError as e:
            return ProbeResult(False, f"HTTP {e.code}")
        except (URLError, OSError) as e:
            return ProbeResult(False, f"No response: {e}")
    return check


def command_probe(test: List[str], timeout: float, env: Optional[Dict[str, str]] = None) -> Probe:
    """
    Runs a Docker-style health check command. ``CMD`` runs argv directly,
    ``CMD-SHELL`` runs a string through the shell, ``NONE`` always passes.
    """
    use_shell = False
    if test[0] == "CMD":
        real_cmd: Union[List[str], str] = list(test[1:])
    elif test[0] == "CMD-SHELL":
        real_cmd = test[1] if len(test) > 1 else ""
        use_shell = True
    elif test[0] == "NONE":
        return lambda: ProbeResult(True, "health check disabled")
    else:
        real_cmd = list(test)

    def check() -> ProbeResult:
        try:
            result = subprocess.run(
                real_cmd,
                shell=use_shell,
                env=env,
                capture_output=True,
                timeout=timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(False, "Health check timed out")
        except OSError as e:
            return ProbeResult(False, str(e))

        if result.returncode == 0:
            return ProbeResult(True, result.stdout[:500] if result.stdout else "")
        return ProbeResult(
            False,
            result.stderr[:500].strip() if result.stderr else f"Exit code: {result.returncode}",
        )
    return check


def build_probe(check: ReadinessCheck, runner: ProcessRunner, env: Optional[Dict[str, str]] = None) -> Probe:
    """
    Returns the probe for a readiness check. Every probe except the process
    check also fails while the process is not running, so a port held by
    some other program never makes a dead service look ready.
    """
    if check.kind is ProbeKind.PROCESS:
        return process_probe(runner)
    if check.kind is ProbeKind.TCP:
        inner = tcp_probe(check.host, check.port, check.timeout)
    elif check.kind is ProbeKind.HTTP:
        inner = http_probe(check.url, check.timeout)
    else:
        inner = command_probe(list(check.test), check.timeout, env)

    alive = process_probe(runner)

    def guarded() -> ProbeResult:
        liveness = alive()
        if not liveness.ok:
            return liveness
        return inner()
    return guarded
