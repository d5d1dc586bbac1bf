"""Teardown guard: stops every spawned instance exactly once."""

import atexit
import threading
from typing import Callable, List, Optional, Tuple

from ..core.errors import PicotestError, TeardownError
from ..core.log import get_logger, log_instance_event, log_cluster_event
from ..core.process import ProcessSupervisor
from ..core.types import TimeoutConfig
from ..utils.ports import PortAllocator
from .record import InstanceRecord

logger = get_logger(__name__)

Cleanup = Callable[[], None]


class TeardownGuard:
    """Owns the cleanup of one cluster.

    ``release()`` is idempotent and safe to call from several threads: it
    stops every instance still supervised (SIGTERM, grace period, SIGKILL),
    releases the port reservation, then runs the registered cleanup callbacks
    in reverse registration order. Every failure is logged as a
    TeardownError and never raised.

    The guard registers itself with ``atexit`` so an interpreter exit
    without an explicit release still stops the processes.
    """

    def __init__(
        self,
        cluster_id: str,
        supervisor: ProcessSupervisor,
        port_allocator: Optional[PortAllocator] = None,
        port_owner: Optional[str] = None,
        timeouts: Optional[TimeoutConfig] = None,
    ) -> None:
        self.cluster_id = cluster_id
        self._supervisor = supervisor
        self._ports = port_allocator
        self._port_owner = port_owner
        self._timeouts = timeouts or TimeoutConfig()
        self._records: List[InstanceRecord] = []
        self._cleanups: List[Tuple[str, Cleanup]] = []
        self._lock = threading.Lock()
        self._release_lock = threading.Lock()
        self._released = False
        self.errors: List[TeardownError] = []
        atexit.register(self.release)

    @property
    def released(self) -> bool:
        return self._released

    def track(self, records: List[InstanceRecord]) -> None:
        with self._lock:
            if self._released:
                raise PicotestError(f"Teardown guard of {self.cluster_id} is already released")
            self._records.extend(r for r in records if r not in self._records)

    def add_cleanup(self, name: str, callback: Cleanup) -> None:
        with self._lock:
            self._cleanups.append((name, callback))

    def stop_instance(self, record: InstanceRecord, graceful: bool = True) -> None:
        """Stop a single instance through the teardown path. Never raises."""
        try:
            exit_code = self._supervisor.stop(
                record.process_key,
                graceful=graceful,
                timeout=self._timeouts.process_graceful_stop,
                kill_timeout=self._timeouts.process_force_kill,
            )
            if exit_code is not None:
                record.exit_code = exit_code
        except Exception as e:  # best effort
            self._record_error(
                TeardownError(f"Failed to stop {record}: {e}", instance_index=record.index)
            )
        if record.mark_stopped():
            log_instance_event(logger, "stopped", record, exit_code=record.exit_code)

    def release(self) -> None:
        with self._release_lock:
            with self._lock:
                if self._released:
                    return
                self._released = True
                records = list(self._records)
                cleanups = list(reversed(self._cleanups))
            self._teardown(records, cleanups)

    def _teardown(self, records: List[InstanceRecord], cleanups: List[Tuple[str, Cleanup]]) -> None:
        log_cluster_event(logger, "teardown", self.cluster_id, instances=len(records))
        for record in records:
            self.stop_instance(record)

        if self._ports is not None and self._port_owner is not None:
            try:
                self._ports.release(self._port_owner)
            except Exception as e:  # best effort
                self._record_error(TeardownError(f"Failed to release ports: {e}"))

        for name, callback in cleanups:
            try:
                callback()
            except Exception as e:  # best effort
                self._record_error(TeardownError(f"Cleanup '{name}' failed: {e}"))

        atexit.unregister(self.release)
        log_cluster_event(logger, "released", self.cluster_id, errors=len(self.errors))

    def _record_error(self, error: TeardownError) -> None:
        self.errors.append(error)
        logger.error("%s", error.message, extra={"instance_index": error.instance_index})

    def __enter__(self) -> "TeardownGuard":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
