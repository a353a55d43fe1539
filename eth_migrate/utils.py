"""Local process, port and console logging helpers."""

import logging
import os
import random
import socket
import time
from typing import IO, Optional
from urllib.parse import urlparse

import coloredlogs
import psutil

logger = logging.getLogger(__name__)


#: Loggers that flood the console with every JSON-RPC request
NOISY_LOGGERS = (
    "web3.providers.HTTPProvider",
    "web3.providers.AsyncHTTPProvider",
    "web3.RequestManager",
    "urllib3.connectionpool",
)


def is_localhost_port_listening(port: int, host="localhost") -> bool:
    """Does some process accept TCP connections at this port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        return probe.connect_ex((host, port)) == 0


def find_free_port(min_port: int = 20_000, max_port: int = 40_000, max_attempt: int = 20) -> int:
    """Pick a random unused localhost port for a node we launch.

    Another process may grab the port before we bind it,
    the launcher retries in that case.

    :raise RuntimeError:
        All picked ports were taken
    """
    assert min_port < max_port, f"Bad port range {min_port} - {max_port}"

    for attempt in range(max_attempt):
        candidate = random.randrange(min_port, max_port)
        if not is_localhost_port_listening(candidate, "127.0.0.1"):
            return candidate
        logger.debug("Port %d taken, attempt %d", candidate, attempt)

    raise RuntimeError(f"No free port between {min_port} and {max_port} after {max_attempt} attempts")


def _drain(stream: Optional[IO[bytes]], name: str, log_level: Optional[int]) -> bytes:
    if stream is None:
        return b""
    output = stream.read()
    if log_level is not None:
        for line in output.splitlines():
            logger.log(log_level, "%s: %s", name, line.decode("utf-8", errors="replace").strip())
    return output


def shutdown_hard(
    process: psutil.Popen,
    log_level: Optional[int] = None,
    block=True,
    block_timeout=30,
    check_port: Optional[int] = None,
) -> tuple[bytes, bytes]:
    """SIGKILL a launched node and collect what it printed.

    :param log_level:
        Dump the process output to logging at this level

    :param block:
        Wait until ``check_port`` is released

    :return:
        stdout, stderr
    """
    if process.poll() is None:
        process.kill()

    stdout = _drain(process.stdout, "stdout", log_level)
    stderr = _drain(process.stderr, "stderr", log_level)

    if not block:
        return stdout, stderr

    assert check_port is not None, "Cannot block without a port to watch"
    deadline = time.monotonic() + block_timeout
    while is_localhost_port_listening(check_port):
        if time.monotonic() > deadline:
            raise AssertionError(f"Port {check_port} still open {block_timeout} seconds after killing pid {process.pid}")
        time.sleep(0.1)

    return stdout, stderr


def get_url_domain(url: str) -> str:
    """Host part of a JSON-RPC URL, for logging.

    Node providers put API keys in the path, so we never log full URLs.
    """
    parsed = urlparse(url)
    if parsed.port in (None, 80, 443):
        return parsed.hostname
    return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(default_log_level="info", simplified_logging=True) -> logging.Logger:
    """Coloured console output for the command line.

    ``LOG_LEVEL`` environment variable wins over ``default_log_level``.

    :param simplified_logging:
        Print bare messages, without timestamps and logger names
    """
    level_name = os.environ.get("LOG_LEVEL", default_log_level).upper()
    level = logging.getLevelName(level_name)
    assert isinstance(level, int), f"Unknown log level {level_name}"

    fmt = "%(message)s" if simplified_logging else "%(asctime)s %(name)-36s %(message)s"
    coloredlogs.install(level=level, fmt=fmt, datefmt="%H:%M:%S")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger()
