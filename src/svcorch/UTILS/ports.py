"""
Utilities for checking availability and reachability of network ports.
"""
import socket


def is_port_free(port: int, host: str = '') -> bool:
    """
    Checks if a TCP port can be bound on this host.

    SO_REUSEADDR is set the way servers set it, so sockets lingering in
    TIME_WAIT from a previous run do not count as in use.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def is_port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """
    Checks if something accepts TCP connections on host:port.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
