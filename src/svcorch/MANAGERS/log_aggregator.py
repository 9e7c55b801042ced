"""
Reading and tailing of per-service log files.
"""
import os
import time
from collections import deque
from typing import Callable, Dict, IO, List, Optional


class LogAggregator:
    """
    Reads the stdout/stderr capture files the process runner writes.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def path_for(self, name: str) -> str:
        return os.path.join(self.log_dir, f"{name}.log")

    def read_tail(self, name: str, lines: int = 50) -> List[str]:
        """
        Returns the last ``lines`` lines of a service's log, or an empty list
        if the service has not logged anything yet.
        """
        path = self.path_for(name)
        if not os.path.exists(path):
            return []
        with open(path, 'r', errors='replace') as f:
            return [line.rstrip('\n') for line in deque(f, maxlen=lines)]

    def follow(self,
               service_names: List[str],
               emit: Callable[[str, str], None],
               stop: Optional[Callable[[], bool]] = None,
               poll_interval: float = 0.1):
        """
        Emits new lines from the given services' logs as they are written.

        :param service_names: Names of the services to follow.
        :param emit: Called with (service name, line) for every new line.
        :param stop: Polled between reads; following ends when it returns True.
        """
        files: Dict[str, IO[str]] = {}
        try:
            while stop is None or not stop():
                idle = True
                for name in service_names:
                    if name not in files:
                        path = self.path_for(name)
                        if not os.path.exists(path):
                            continue
                        f = open(path, 'r', errors='replace')
                        f.seek(0, os.SEEK_END)
                        files[name] = f
                    line = files[name].readline()
                    if line:
                        idle = False
                        emit(name, line.rstrip('\n'))
                if idle:
                    time.sleep(poll_interval)
        finally:
            for f in files.values():
                f.close()
