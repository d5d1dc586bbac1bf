"""Tests for the pytest plugin session state."""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from picotest.core.errors import PicotestError
from picotest.core.log import get_log_context, log_context
from picotest.pytest_plugin.plugin import PicotestPlugin, pytest_runtest_protocol


def make_cluster(cluster_id: str) -> Mock:
    cluster = Mock()
    cluster.cluster_id = cluster_id
    return cluster


@pytest.fixture
def plugin(mock_config):
    return PicotestPlugin(mock_config)


class TestPicotestPlugin:
    """Test cluster bookkeeping."""

    def test_start_and_release(self, plugin) -> None:
        cluster = make_cluster("c1")
        with patch("picotest.pytest_plugin.plugin.run_cluster", return_value=cluster) as run:
            started = plugin.start_cluster(Path("/plugin"), timeout=5, single_node=True)
        assert started is cluster
        assert run.call_args.kwargs["timeout"] == 5
        assert run.call_args.kwargs["single_node"] is True
        assert run.call_args.kwargs["context"] is plugin.context
        assert plugin.running_clusters() == 1

        plugin.release_cluster(cluster)
        cluster.release.assert_called_once()
        assert plugin.running_clusters() == 0

    def test_context_created_once(self, plugin, mock_config) -> None:
        assert plugin.context is plugin.context
        assert plugin.context.config is mock_config

    def test_release_all_logs_errors(self, plugin) -> None:
        broken = make_cluster("c1")
        broken.release.side_effect = PicotestError("stuck")
        healthy = make_cluster("c2")
        with patch("picotest.pytest_plugin.plugin.run_cluster", side_effect=[broken, healthy]):
            plugin.start_cluster(Path("/a"))
            plugin.start_cluster(Path("/b"))
        plugin.release_all()
        broken.release.assert_called_once()
        healthy.release.assert_called_once()
        assert plugin.running_clusters() == 0


class TestLogContextHook:
    """Test per-test log context."""

    def test_node_id_scoped_to_test(self) -> None:
        item = Mock(nodeid="tests/test_weather.py::test_forecast")
        with log_context(run="nightly"):
            hook = pytest_runtest_protocol(item, None)
            next(hook)
            assert get_log_context() == {
                "run": "nightly",
                "test_name": "tests/test_weather.py::test_forecast",
            }
            with pytest.raises(StopIteration):
                next(hook)
            assert get_log_context() == {"run": "nightly"}
        assert get_log_context() == {}
