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
Execution of system processes with log redirection, pid files and
process-tree termination.
"""
import logging
import os
import subprocess
from typing import IO, List, Dict, Optional, Tuple

import psutil

from ..errors import LaunchError

logger = logging.getLogger(__name__)

# /proc/stat btime can drift slightly, so start times are compared loosely.
_CREATE_TIME_TOLERANCE = 1.0


class ProcessRunner:
    """
    Manages the execution of a single system process.

    The process runs in its own session so that stopping it also reaches any
    children it spawned (a shell, or the ``docker run`` client).
    """
    def __init__(self, name: str, log_file: Optional[str] = None, pid_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): File that receives stdout and stderr.
            pid_file (Optional[str]): File the pid is recorded in while running.
        """
        self.name = name
        self.log_file = log_file
        self.pid_file = pid_file
        self.process: Optional[subprocess.Popen] = None
        self.adopted: Optional[psutil.Process] = None
        self._log_handle: Optional[IO[str]] = None

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None:
            return self.process.pid
        if self.adopted is not None:
            return self.adopted.pid
        return None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Returns:
            int: The pid of the new process.

        Raises:
            LaunchError: If the process could not be spawned.
        """
        if self.is_running():
            raise LaunchError(f"{self.name} is already running (pid {self.pid})")
        self._release()

        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.debug("[%s] Starting command: %s", self.name, ' '.join(command))
        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._close_log()
            raise LaunchError(f"{self.name}: cannot execute {command[0]!r}: {e}") from e

        self._write_pid(self.process.pid)
        return self.process.pid

    def attach(self) -> bool:
        """
        Adopts a process recorded in the pid file by an earlier run.

        The pid is only trusted when the live process also carries the
        recorded start time; otherwise the pid was reused and the file is
        removed as stale.

        Returns:
            bool: True if the recorded process is still alive.
        """
        record = self._read_pid_record()
        if record is None:
            return False
        pid, created = record
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                raise psutil.NoSuchProcess(pid)
            if created is None or abs(proc.create_time() - created) > _CREATE_TIME_TOLERANCE:
                logger.warning("[%s] pid %d now belongs to another process, ignoring pid file", self.name, pid)
                self._remove_pid()
                return False
        except psutil.NoSuchProcess:
            logger.debug("[%s] Stale pid file for %d, removing", self.name, pid)
            self._remove_pid()
            return False
        except psutil.AccessDenied:
            logger.warning("[%s] pid %d belongs to another user, ignoring pid file", self.name, pid)
            self._remove_pid()
            return False
        self.adopted = proc
        return True

    def wait(self) -> Optional[int]:
        """
        Blocks until the process exits.

        Returns:
            Optional[int]: Exit code (negative for a signal), or None if
            nothing was started or the exit code of an adopted process is
            unknown.
        """
        if self.process is not None:
            code = self.process.wait()
            self._release()
            return code
        if self.adopted is not None:
            try:
                return self.adopted.wait()
            except psutil.NoSuchProcess:
                return None
            finally:
                self._release()
        return None

    def stop(self, timeout: float = 10):
        """
        Stops the process tree by sending SIGTERM, followed by SIGKILL for
        anything still alive after the timeout. Does nothing if no process
        is running.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        pid = self.pid
        if pid is None or not self.is_running():
            self._release()
            return

        try:
            root = self.adopted or psutil.Process(pid)
            procs = root.children(recursive=True) + [root]
        except psutil.NoSuchProcess:
            self._release()
            return

        logger.debug("[%s] Stopping process tree of %d", self.name, pid)
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        if alive:
            logger.warning("[%s] Process did not terminate within %ss, killing...", self.name, timeout)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            psutil.wait_procs(alive, timeout=timeout)

        if self.process is not None:
            # Reap so the exit code is recorded and no zombie is left.
            self.process.wait()
        self._release()

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        if self.adopted is not None:
            try:
                return self.adopted.is_running() and self.adopted.status() != psutil.STATUS_ZOMBIE
            except psutil.NoSuchProcess:
                return False
        return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    def read_pid(self) -> Optional[int]:
        record = self._read_pid_record()
        return record[0] if record else None

    def _read_pid_record(self) -> Optional[Tuple[int, Optional[float]]]:
        """
        Reads the pid file: the pid on the first line, the process start
        time on the second.
        """
        if not self.pid_file or not os.path.exists(self.pid_file):
            return None
        try:
            with open(self.pid_file, 'r') as f:
                lines = f.read().split()
            pid = int(lines[0])
            created = float(lines[1]) if len(lines) > 1 else None
        except (OSError, ValueError, IndexError):
            return None
        return pid, created

    def _write_pid(self, pid: int):
        if not self.pid_file:
            return
        try:
            created = psutil.Process(pid).create_time()
        except psutil.Error as e:
            logger.debug("[%s] Not recording pid %d: %s", self.name, pid, e)
            return
        os.makedirs(os.path.dirname(self.pid_file) or '.', exist_ok=True)
        with open(self.pid_file, 'w') as f:
            f.write(f"{pid}\n{created!r}\n")

    def _remove_pid(self):
        if not self.pid_file:
            return
        try:
            os.remove(self.pid_file)
        except FileNotFoundError:
            pass

    def _close_log(self):
        handle, self._log_handle = self._log_handle, None
        if handle is not None:
            handle.close()

    def _release(self):
        """
        Forgets a finished process. The Popen object is kept so its exit code
        stays readable.
        """
        if self.process is not None and self.process.poll() is None:
            return
        self.adopted = None
        self._close_log()
        self._remove_pid()
