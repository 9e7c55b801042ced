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
Lifecycle supervision for a single service: launch, readiness probing,
exit monitoring, and restart policy handling with exponential backoff.
"""
import logging
import os
import threading
import time
from dataclasses import replace
from typing import Dict, Optional, Tuple

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    stop_when_event_set,
    wait_fixed,
)

from ..MODELS.orchestration_config import OrchestratorSettings
from ..MODELS.runtime_state import Phase, RuntimeState
from ..MODELS.service_definition import RestartPolicy, ServiceSpec
from ..RUNNERS.launch_command import LaunchCommandBuilder
from ..RUNNERS.process_runner import ProcessRunner
from ..errors import LaunchError
from .environment_manager import EnvironmentManager
from .network_manager import NetworkManager
from .readiness_probes import Probe, ProbeResult, build_probe
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ProcessSupervisor:
    """
    Owns the lifecycle and the RuntimeState of one service.

    ``start`` returns immediately; a monitor thread launches the process,
    probes it until ready, waits for it to exit and applies the restart
    policy. The RuntimeState is an immutable snapshot that only this class
    replaces, so ``state`` can be read from any thread without locking.
    """

    def __init__(
        self,
        spec: ServiceSpec,
        settings: Optional[OrchestratorSettings] = None,
        base_dir: str = ".",
        extra_env: Optional[Dict[str, str]] = None,
        launcher: Optional[LaunchCommandBuilder] = None,
        network_manager: Optional[NetworkManager] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        """
        :param spec: The service to supervise.
        :param settings: Grace period, restart and backoff tunables.
        :param base_dir: Project directory; state and relative paths live under it.
        :param extra_env: Variables added to a command target's environment.
        :param launcher: Builds the argv from the launch target.
        :param network_manager: Checks published ports before each launch.
        :param runner: The process runner; one is created if omitted.
        """
        self.spec = spec
        self.settings = settings or OrchestratorSettings()
        self.base_dir = os.path.abspath(base_dir)
        self.extra_env = dict(extra_env or {})
        self.launcher = launcher or LaunchCommandBuilder(
            self.settings.project_name, docker_binary=self.settings.docker_binary
        )
        self.network_manager = network_manager or NetworkManager(
            self.settings.project_name, self.settings.docker_binary
        )
        self.env_manager = EnvironmentManager(self.base_dir)
        self.volume_manager = VolumeManager(
            self.base_dir, os.path.join(self.settings.state_dir, "volumes")
        )

        state_dir = os.path.join(self.base_dir, self.settings.state_dir)
        self.runner = runner or ProcessRunner(
            spec.name,
            log_file=os.path.join(state_dir, "logs", f"{spec.name}.log"),
            pid_file=os.path.join(state_dir, "run", f"{spec.name}.pid"),
        )

        self._state = RuntimeState()
        self._changed = threading.Condition()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._probe: Probe = build_probe(spec.readiness, self.runner)
        self._last_probe = ProbeResult(False, "not probed yet")

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def state(self) -> RuntimeState:
        """The current RuntimeState snapshot. Never blocks."""
        return self._state

    @property
    def max_restarts(self) -> int:
        if self.spec.max_restarts is not None:
            return self.spec.max_restarts
        return self.settings.max_restarts

    def backoff_delay(self, attempt: int) -> float:
        """
        Seconds to wait before restart ``attempt`` (1-based): the base delay
        doubled for each earlier attempt, capped.
        """
        return min(self.settings.backoff_base * (2 ** (attempt - 1)), self.settings.backoff_cap)

    def start(self):
        """
        Begins a lifecycle: Pending (or Stopped/Failed) -> Starting.

        Non-blocking; readiness is observed by the monitor thread. Does
        nothing while a lifecycle is already active. A live process left by
        an earlier detached run is adopted instead of launching a second one.
        """
        with self._changed:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("[%s] Already supervised, start ignored", self.name)
                return
            if self.runner.is_running():
                logger.debug("[%s] Process %s already running, start ignored", self.name, self.runner.pid)
                return
            if self._adopt():
                logger.info("[%s] Already running as pid %s", self.name, self.runner.pid)
                return
            self._cancel.clear()
            self._set(RuntimeState(phase=Phase.STARTING))
            self._thread = threading.Thread(
                target=self._run, name=f"supervisor-{self.name}", daemon=True
            )
            self._thread.start()
        logger.info("[%s] Starting", self.name)

    def probe(self) -> bool:
        """
        Runs a single readiness check; the first success while Starting
        moves the service to Ready.

        :return: True if the check passed.
        """
        result = self._probe()
        self._last_probe = result
        if not result.ok:
            logger.debug("[%s] Not ready: %s", self.name, result.detail)
            return False
        with self._changed:
            if self._state.phase is Phase.STARTING and not self._cancel.is_set():
                self._set(replace(self._state, phase=Phase.READY))
                logger.info("[%s] Ready (%s)", self.name, result.detail or "probe passed")
        return True

    def on_exit(self, code: Optional[int], reason: Optional[str] = None) -> bool:
        """
        Applies the restart policy after the process ended.

        Restarts when the policy is Always, or OnFailure and the exit was
        not clean, and fewer than ``max_restarts`` restarts were made. The
        restart waits out the backoff first; a cancellation during the wait
        abandons it.

        :param code: The exit code, or None when the service failed without
            one (launch error, readiness exhausted).
        :param reason: Description of the failure; derived from code if omitted.
        :return: True if the caller should launch the process again.
        """
        if reason is None:
            reason = f"exited with code {code}" if code is not None else "process ended"
        policy = self.spec.restart_policy
        wants_restart = policy is RestartPolicy.ALWAYS or (
            policy is RestartPolicy.ON_FAILURE and code != 0
        )

        restarts = self._state.restart_count
        if wants_restart and restarts < self.max_restarts:
            attempt = restarts + 1
            delay = self.backoff_delay(attempt)
            if not self._update(phase=Phase.FAILED, restart_count=attempt,
                                last_error=reason, retrying=True, pid=None):
                return False
            logger.warning("[%s] %s; restarting in %.1fs (attempt %d/%d)",
                           self.name, reason, delay, attempt, self.max_restarts)
            return not self._cancel.wait(delay)

        if self._update(phase=Phase.FAILED, last_error=reason, retrying=False, pid=None):
            if wants_restart:
                logger.error("[%s] %s; giving up after %d restarts", self.name, reason, restarts)
            else:
                logger.error("[%s] %s", self.name, reason)
        return False

    def stop(self):
        """
        Stops the service: cancels any backoff or probing, terminates the
        process tree (SIGTERM, then SIGKILL after the grace period) and moves
        to Stopped. Safe to call in any phase and more than once.

        :raises psutil.Error: If the process could not be signalled. The
            phase still becomes Stopped, with the error recorded.
        """
        self.cancel()
        thread = self._thread
        error: Optional[Exception] = None
        try:
            self.runner.stop(timeout=self.settings.stop_grace_period)
        except Exception as e:
            error = e
            raise
        finally:
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=self.settings.stop_grace_period + self.spec.readiness.timeout + 1)
            with self._changed:
                was = self._state.phase
                changes = dict(phase=Phase.STOPPED, pid=None, retrying=False)
                if error is not None:
                    changes["last_error"] = f"stop failed: {error}"
                self._set(replace(self._state, **changes))
            if was is not Phase.STOPPED:
                logger.info("[%s] Stopped", self.name)

    def cancel(self):
        """
        Interrupts backoff and probe waits without touching the process.
        """
        with self._changed:
            self._cancel.set()
            self._changed.notify_all()

    def wait_settled(self,
                     cancel: Optional[threading.Event] = None,
                     timeout: Optional[float] = None) -> RuntimeState:
        """
        Blocks until the service is Ready, Stopped, or Failed with no restart
        pending, or until ``cancel`` is set or ``timeout`` elapses.

        :return: The RuntimeState at that moment.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while not self._state.settled:
                if cancel is not None and cancel.is_set():
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    break
                self._changed.wait(timeout=0.1)
            return self._state

    def attach(self) -> bool:
        """
        Adopts a process left running by an earlier detached run, so it can
        be reported and stopped. Adopted processes are not restarted.

        :return: True if a live process was found.
        """
        with self._changed:
            if self._thread is not None and self._thread.is_alive():
                return False
            if not self._adopt():
                return False
        logger.debug("[%s] Attached to running process %s", self.name, self.runner.pid)
        return True

    @property
    def adopted(self) -> bool:
        """True while the process was adopted rather than launched here."""
        return self.runner.adopted is not None

    def _adopt(self) -> bool:
        # Caller holds self._changed.
        if not self.runner.attach():
            return False
        self._set(RuntimeState(phase=Phase.READY, pid=self.runner.pid))
        return True

    def _run(self):
        """
        Monitor thread body: launch, probe, wait for exit, restart per policy.
        """
        try:
            while True:
                code, reason = self._run_once()
                if self._cancel.is_set():
                    return
                if not self.on_exit(code, reason):
                    return
        except Exception as e:
            logger.exception("[%s] Supervisor crashed", self.name)
            self._update(phase=Phase.FAILED, retrying=False, last_error=f"supervisor error: {e}")

    def _run_once(self) -> Tuple[Optional[int], Optional[str]]:
        """
        Runs the process once.

        :return: Exit code and failure reason for ``on_exit``.
        """
        try:
            if not self._launch():
                return None, None
        except (LaunchError, OSError) as e:
            logger.error("[%s] Launch failed: %s", self.name, e)
            return None, f"launch failed: {e}"

        if not self._await_readiness():
            if self._cancel.is_set():
                return None, None
            if not self.runner.is_running():
                return self.runner.wait(), None
            check = self.spec.readiness
            reason = (f"readiness probe failed after {check.retries} attempts: "
                      f"{self._last_probe.detail}")
            logger.error("[%s] %s", self.name, reason)
            self.runner.stop(timeout=self.settings.stop_grace_period)
            return None, reason

        return self.runner.wait(), None

    def _launch(self) -> bool:
        """
        Prepares environment and volumes and spawns the process.

        :return: False if the lifecycle was cancelled first.
        :raises LaunchError: If the process cannot be started.
        """
        spec = self.spec
        service_env = self.env_manager.service_environment(spec)
        volume_sources = self.volume_manager.prepare_volumes(spec)
        self.network_manager.check_ports(spec)

        argv = self.launcher.build(spec, env_keys=service_env.keys(), volume_sources=volume_sources)
        if not argv:
            raise LaunchError(f"{self.name}: no command specified, nothing to run")
        env = self.env_manager.process_environment(
            service_env, None if spec.launch_target.is_image else self.extra_env
        )
        working_dir = self.base_dir
        if not spec.launch_target.is_image and spec.launch_target.working_dir:
            working_dir = os.path.join(self.base_dir, spec.launch_target.working_dir)
        self._probe = build_probe(spec.readiness, self.runner, env)

        with self._changed:
            if self._cancel.is_set():
                return False
            pid = self.runner.start(argv, env=env, working_dir=working_dir)
            self._set(replace(self._state, phase=Phase.STARTING, pid=pid, retrying=False))
        logger.debug("[%s] Launched pid %d", self.name, pid)
        return True

    def _await_readiness(self) -> bool:
        """
        Probes on a fixed interval until ready, the attempts run out, the
        process exits, or the lifecycle is cancelled.
        """
        check = self.spec.readiness
        if check.start_period and self._cancel.wait(check.start_period):
            return False
        retrying = Retrying(
            stop=stop_any(
                stop_after_attempt(check.retries),
                stop_when_event_set(self._cancel),
                self._process_exited,
            ),
            wait=wait_fixed(check.interval),
            retry=retry_if_result(lambda ready: not ready),
            sleep=self._cancel.wait,
            retry_error_callback=lambda retry_state: False,
        )
        return retrying(self.probe)

    def _process_exited(self, retry_state) -> bool:
        return not self.runner.is_running()

    def _set(self, state: RuntimeState):
        # Caller holds self._changed.
        self._state = state
        self._changed.notify_all()

    def _update(self, **changes) -> bool:
        """
        Applies a transition from the monitor thread; dropped once the
        lifecycle is cancelled so ``stop`` has the last word.
        """
        with self._changed:
            if self._cancel.is_set():
                return False
            self._set(replace(self._state, **changes))
            return True
