"""Tests for readiness probing against a shared deadline."""

import http.server
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from picotest.core.enums import InstanceState, ProbeKind
from picotest.core.errors import AdminUnreachableError, InstanceExitedError, ReadinessTimeout
from picotest.core.time import Deadline
from picotest.core.types import ReadinessConfig, TimeoutConfig
from picotest.core.value_objects import InstancePorts, PortBlock
from picotest.instances.readiness import (
    AdminConsoleProbe,
    HttpStatusProbe,
    ReadinessProber,
    make_probe,
)
from picotest.instances.record import InstanceRecord

TIMEOUTS = TimeoutConfig(readiness_poll_interval=0.01, probe_attempt=0.5)


def make_records(count: int):
    block = PortBlock(30000, 4 * count)
    return [
        InstanceRecord(i, f"i{i + 1}", "default", "127.0.0.1", block.instance_ports(i), Path("/tmp"))
        for i in range(count)
    ]


class ScriptedProbe:
    """Answers after a given number of attempts per instance name; never for the rest."""

    def __init__(self, ready_after):
        self.ready_after = ready_after
        self.calls = {}
        self._lock = threading.Lock()

    def __call__(self, instance, timeout):
        with self._lock:
            self.calls[instance.name] = self.calls.get(instance.name, 0) + 1
            count = self.calls[instance.name]
        needed = self.ready_after.get(instance.name)
        return needed is not None and count >= needed


class TestWaitReady:
    """Test ReadinessProber.wait_ready."""

    def test_ready_after_retries(self) -> None:
        record = make_records(1)[0]
        probe = ScriptedProbe({"i1": 3})
        ReadinessProber(probe, timeouts=TIMEOUTS).wait_ready(record, 5.0)
        assert probe.calls["i1"] == 3
        assert record.state == InstanceState.STARTING

    def test_timeout_marks_failed(self) -> None:
        record = make_records(1)[0]
        with pytest.raises(ReadinessTimeout) as exc_info:
            ReadinessProber(ScriptedProbe({}), timeouts=TIMEOUTS).wait_ready(record, 0.1)
        assert exc_info.value.instance_index == 0
        assert exc_info.value.timeout == 0.1
        assert record.state == InstanceState.FAILED

    def test_exited_process(self) -> None:
        record = make_records(1)[0]
        supervisor = Mock()
        supervisor.is_running.return_value = False
        supervisor.exit_code.return_value = 101
        with pytest.raises(InstanceExitedError) as exc_info:
            ReadinessProber(ScriptedProbe({"i1": 100}), supervisor, TIMEOUTS).wait_ready(record, 5.0)
        assert exc_info.value.exit_code == 101
        assert record.exit_code == 101
        assert record.state == InstanceState.FAILED

    def test_attempt_timeout_clamped_to_deadline(self) -> None:
        record = make_records(1)[0]
        seen = []

        def probe(instance, timeout):
            seen.append(timeout)
            return True

        ReadinessProber(probe, timeouts=TimeoutConfig(probe_attempt=30.0)).wait_ready(record, Deadline.after(1.0))
        assert seen[0] <= 1.0


class TestWaitAll:
    """Test ReadinessProber.wait_all."""

    def test_all_ready(self) -> None:
        records = make_records(3)
        probe = ScriptedProbe({"i1": 1, "i2": 2, "i3": 3})
        assert ReadinessProber(probe, timeouts=TIMEOUTS).wait_all(records, 5.0) == []

    def test_total_wait_bounded_by_timeout(self) -> None:
        records = make_records(4)
        start = time.monotonic()
        failures = ReadinessProber(ScriptedProbe({}), timeouts=TIMEOUTS).wait_all(records, 0.3)
        elapsed = time.monotonic() - start
        assert [f.instance_index for f in failures] == [0, 1, 2, 3]
        assert elapsed < 0.3 + 1.0
        assert all(r.state == InstanceState.FAILED for r in records)

    def test_partial_failure(self) -> None:
        records = make_records(3)
        probe = ScriptedProbe({"i1": 1, "i3": 1})
        failures = ReadinessProber(probe, timeouts=TIMEOUTS).wait_all(records, 0.2)
        assert [f.instance_index for f in failures] == [1]
        assert records[0].state == InstanceState.STARTING
        assert records[1].state == InstanceState.FAILED

    def test_probe_crash_is_a_failure(self) -> None:
        records = make_records(1)

        def probe(instance, timeout):
            raise RuntimeError("probe bug")

        failures = ReadinessProber(probe, timeouts=TIMEOUTS).wait_all(records, 1.0)
        assert len(failures) == 1
        assert "probe bug" in failures[0].message
        assert records[0].state == InstanceState.FAILED

    def test_empty(self) -> None:
        assert ReadinessProber(ScriptedProbe({})).wait_all([], 1.0) == []


class TestProbes:
    """Test the concrete probes."""

    def test_admin_probe(self) -> None:
        bridge = Mock()
        record = make_records(1)[0]
        assert AdminConsoleProbe(bridge, "SELECT 1")(record, 1.0) is True
        bridge.run_query.assert_called_once_with(record, "SELECT 1", timeout=1.0)
        bridge.run_query.side_effect = AdminUnreachableError("refused")
        assert AdminConsoleProbe(bridge)(record, 1.0) is False

    def test_make_probe(self) -> None:
        assert isinstance(make_probe(ReadinessConfig(), Mock()), AdminConsoleProbe)
        assert isinstance(make_probe(ReadinessConfig(probe=ProbeKind.HTTP), Mock()), HttpStatusProbe)

    def test_http_probe(self) -> None:
        class Handler(http.server.BaseHTTPRequestHandler):
            def do_GET(self):
                self.send_response(200 if self.path == "/metrics" else 404)
                self.end_headers()

            def log_message(self, *args):
                pass

        server = http.server.HTTPServer(("127.0.0.1", 0), Handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            port = server.server_address[1]
            ports = InstancePorts(binary=port + 1 if port < 65535 else 1, http=port, pg=2, admin=3)
            record = InstanceRecord(0, "i1", "default", "127.0.0.1", ports, Path("/tmp"))
            assert HttpStatusProbe("/metrics")(record, 2.0) is True
            assert HttpStatusProbe("/other")(record, 2.0) is False
        finally:
            server.shutdown()
            server.server_close()

    def test_http_probe_refused(self) -> None:
        record = make_records(1)[0]
        assert HttpStatusProbe()(record, 0.5) is False
