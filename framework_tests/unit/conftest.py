"""
Pytest configuration and fixtures for framework unit tests.
Keeps unit tests from spawning or signalling real processes.
"""

import logging
from typing import Any, Dict, Generator
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def patch_dangerous_operations() -> Generator[Dict[str, Any], None, None]:
    """Patch process creation and signalling during unit tests.

    Sockets and threads stay real: the console and RPC tests talk to fake
    servers on loopback.
    """
    with (
        patch("subprocess.Popen") as mock_popen,
        patch("os.kill") as mock_kill,
        patch("os.killpg") as mock_killpg,
    ):
        mock_subprocess = mock_popen.return_value
        mock_subprocess.pid = 12345
        mock_subprocess.poll.return_value = None
        mock_subprocess.wait.return_value = 0
        mock_subprocess.returncode = None
        mock_subprocess.stdout = None
        mock_subprocess.stderr = None

        mock_kill.return_value = None
        mock_killpg.return_value = None

        yield {"popen": mock_popen, "kill": mock_kill, "killpg": mock_killpg}


@pytest.fixture(autouse=True)
def clean_log_context() -> Generator[None, None, None]:
    """Start every test with an empty log context.

    The installed picotest plugin tags each test with its node id.
    """
    from picotest.core.log import clear_log_context

    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def isolated_log_manager() -> Generator[Any, None, None]:
    """Provide an isolated LogManager for testing."""
    from picotest.core.log import LogManager

    manager = LogManager()
    yield manager
    manager.shutdown()


@pytest.fixture
def isolated_process_supervisor() -> Generator[Any, None, None]:
    """Provide an isolated ProcessSupervisor for testing."""
    from picotest.core.process import ProcessSupervisor

    yield ProcessSupervisor()


def pytest_sessionfinish(session: Any, exitstatus: int) -> None:
    logging.shutdown()
