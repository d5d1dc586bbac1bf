"""Test configuration and fixtures for framework unit tests."""

import shutil
import tempfile
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from picotest.core.types import PicotestConfig, PortConfig, TimeoutConfig


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp(prefix="picotest_test_"))
    try:
        yield temp_path
    finally:
        if temp_path.exists():
            shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def mock_config(temp_dir):
    """Configuration with an isolated work directory and port ledger."""
    return PicotestConfig(
        work_dir=temp_dir / "data",
        log_level="WARNING",
        ports=PortConfig(base_port=41000, max_port=42000, lock_dir=temp_dir / "locks"),
        timeouts=TimeoutConfig(
            readiness_poll_interval=0.01,
            spawn_settle=0.0,
            process_graceful_stop=0.5,
            process_force_kill=0.5,
            admin_request=2.0,
            rpc_request=2.0,
            plugin_enable=0.5,
        ),
    )


@pytest.fixture
def isolated_environment(temp_dir):
    """Provide an isolated environment for tests."""
    with patch.dict("os.environ", {}, clear=True):
        yield temp_dir


@pytest.fixture
def mock_logger():
    """Mock logger for testing."""
    with patch("picotest.core.log.get_logger") as mock_get_logger:
        logger = Mock()
        mock_get_logger.return_value = logger
        yield logger


@pytest.fixture
def plugin_dir(temp_dir):
    """A plugin directory with a two-tier topology and one plugin."""
    root = temp_dir / "plugin"
    root.mkdir()
    (root / "topology.toml").write_text(
        """
[tier.default]
replicasets = 1
replication_factor = 1

[tier.storage]
replicasets = 2
replication_factor = 1

[plugin.weather]
version = "0.2.0"
migration_context = [{ name = "storage_tier", value = "storage" }]

[plugin.weather.service.cache]
tiers = ["default"]

[plugin.weather.service.writer]
tiers = ["storage"]

[enviroment]
RUST_LOG = "info"
""",
        encoding="utf-8",
    )
    return root
