"""pytest plugin: command line options and cluster fixtures for picotest."""

from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import pytest
from pytest import StashKey

from ..core.config import get_config
from ..core.context import ApplicationContext
from ..core.errors import PicotestError
from ..core.log import get_logger, log_context
from ..core.types import PicotestConfig
from ..instances.handle import ClusterHandle
from ..instances.orchestrator import run_cluster

logger = get_logger(__name__)


class PicotestPlugin:
    """Session state: one application context and every cluster still running."""

    def __init__(self, config: Optional[PicotestConfig] = None) -> None:
        self._config = config
        self._context: Optional[ApplicationContext] = None
        self._clusters: Dict[str, ClusterHandle] = {}

    @property
    def context(self) -> ApplicationContext:
        if self._context is None:
            self._context = ApplicationContext.create(self._config or get_config())
        return self._context

    def start_cluster(self, path: Path, timeout: Optional[float] = None, **spec_fields: Any) -> ClusterHandle:
        cluster = run_cluster(path, timeout=timeout, context=self.context, **spec_fields)
        self._clusters[str(cluster.cluster_id)] = cluster
        return cluster

    def release_cluster(self, cluster: ClusterHandle) -> None:
        self._clusters.pop(str(cluster.cluster_id), None)
        cluster.release()

    def release_all(self) -> None:
        """Safety net for clusters whose fixture never reached its finalizer."""
        for cluster_id, cluster in list(self._clusters.items()):
            logger.info("Plugin safety cleanup: releasing cluster %s", cluster_id)
            try:
                cluster.release()
            except PicotestError as e:
                logger.error("Error releasing cluster %s: %s", cluster_id, e)
        self._clusters.clear()

    def running_clusters(self) -> int:
        return len(self._clusters)


plugin_key = StashKey[PicotestPlugin]()


def pytest_addoption(parser: Any) -> None:
    """Add picotest command line options."""
    group = parser.getgroup("picotest", "picodata plugin clusters")
    group.addoption(
        "--picotest-path",
        action="store",
        default=None,
        help="plugin directory holding topology.toml",
    )
    group.addoption(
        "--picotest-timeout",
        action="store",
        type=float,
        default=None,
        help="readiness timeout in seconds for the session cluster",
    )
    group.addoption(
        "--picotest-single-node",
        action="store_true",
        default=False,
        help="start the session cluster as a single instance",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Plugin entry point - create and store plugin in stash."""
    config.stash[plugin_key] = PicotestPlugin()
    config.addinivalue_line(
        "markers", "picotest_cluster: test runs against the session picotest cluster"
    )


def pytest_unconfigure(config: pytest.Config) -> None:
    plugin = config.stash.get(plugin_key, None)
    if plugin is not None:
        plugin.release_all()


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_protocol(item: pytest.Item, nextitem: Optional[pytest.Item]) -> Iterator[None]:
    """Tag log records of one test with its node id, restoring the previous context after."""
    with log_context(test_name=item.nodeid):
        yield


def _get_plugin(config: pytest.Config) -> PicotestPlugin:
    return config.stash[plugin_key]


@pytest.fixture(scope="session")
def picotest_plugin(pytestconfig: pytest.Config) -> PicotestPlugin:
    return _get_plugin(pytestconfig)


@pytest.fixture(scope="session")
def picotest_cluster(pytestconfig: pytest.Config, picotest_plugin: PicotestPlugin) -> Iterator[ClusterHandle]:
    """Cluster started once per session from ``--picotest-path``.

    The cluster is released when the session ends, whatever the outcome of
    the tests that used it.
    """
    path = pytestconfig.getoption("--picotest-path")
    if path is None:
        pytest.skip("--picotest-path not given")
    cluster = picotest_plugin.start_cluster(
        Path(path),
        timeout=pytestconfig.getoption("--picotest-timeout"),
        single_node=pytestconfig.getoption("--picotest-single-node"),
    )
    try:
        yield cluster
    finally:
        picotest_plugin.release_cluster(cluster)


@pytest.fixture
def picotest_cluster_factory(picotest_plugin: PicotestPlugin) -> Iterator[Callable[..., ClusterHandle]]:
    """Start clusters inside one test; all of them are released afterwards.

    Example:
        def test_two_tiers(picotest_cluster_factory):
            cluster = picotest_cluster_factory(path, tiers={"default": 1, "storage": 2})
            assert len(cluster) == 3
    """
    started = []

    def factory(path: Path, timeout: Optional[float] = None, **spec_fields: Any) -> ClusterHandle:
        cluster = picotest_plugin.start_cluster(Path(path), timeout=timeout, **spec_fields)
        started.append(cluster)
        return cluster

    try:
        yield factory
    finally:
        for cluster in reversed(started):
            picotest_plugin.release_cluster(cluster)
