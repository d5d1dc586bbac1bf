"""Readiness probing of spawned instances against one shared deadline."""

import asyncio
import concurrent.futures
from typing import List, Optional, Protocol, Union

import aiohttp

from ..core.enums import InstanceState, ProbeKind
from ..core.errors import AdminError, InstanceExitedError, ReadinessTimeout
from ..core.log import get_logger, log_instance_event
from ..core.process import ProcessSupervisor, read_log_tail
from ..core.time import Deadline
from ..core.types import ReadinessConfig, TimeoutConfig
from ..bridges.admin import AdminBridge
from .record import InstanceRecord

logger = get_logger(__name__)


class Probe(Protocol):
    """One readiness attempt; returns True when the instance answered."""

    def __call__(self, instance: InstanceRecord, timeout: float) -> bool:
        ...


class AdminConsoleProbe:
    """Runs a trivial query through the admin console."""

    def __init__(self, bridge: AdminBridge, query: str = "SELECT 1") -> None:
        self._bridge = bridge
        self._query = query

    def __call__(self, instance: InstanceRecord, timeout: float) -> bool:
        try:
            self._bridge.run_query(instance, self._query, timeout=timeout)
            return True
        except AdminError as e:
            logger.debug("Admin probe of %s failed: %s", instance, e)
            return False


class HttpStatusProbe:
    """GETs a path on the instance HTTP port and expects status 200."""

    def __init__(self, path: str = "/metrics") -> None:
        self._path = path

    def __call__(self, instance: InstanceRecord, timeout: float) -> bool:
        try:
            return asyncio.run(self._check(instance, timeout))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.debug("HTTP probe of %s failed: %s", instance, e)
            return False

    async def _check(self, instance: InstanceRecord, timeout: float) -> bool:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as session:
            async with session.get(f"{instance.http_url}{self._path}") as response:
                if response.status != 200:
                    logger.debug("HTTP probe of %s: status %s", instance, response.status)
                return response.status == 200


def make_probe(readiness: ReadinessConfig, bridge: AdminBridge) -> Probe:
    if readiness.probe == ProbeKind.HTTP:
        return HttpStatusProbe(readiness.http_path)
    return AdminConsoleProbe(bridge, readiness.probe_query)


class ReadinessProber:
    """Polls instances until they answer or the shared deadline passes.

    Failed attempts (connection refused, timeouts, garbled answers) are
    expected while an instance boots and only cause another attempt. An
    instance whose process exits is failed immediately.
    """

    def __init__(
        self,
        probe: Probe,
        supervisor: Optional[ProcessSupervisor] = None,
        timeouts: Optional[TimeoutConfig] = None,
        max_workers: int = 16,
    ) -> None:
        self._probe = probe
        self._supervisor = supervisor
        self._timeouts = timeouts or TimeoutConfig()
        self._max_workers = max_workers

    def wait_ready(self, instance: InstanceRecord, timeout: Union[float, Deadline]) -> None:
        """Block until ``instance`` answers.

        Raises:
            ReadinessTimeout: The deadline passed first; the instance is FAILED
            InstanceExitedError: The process exited; the instance is FAILED
        """
        deadline = timeout if isinstance(timeout, Deadline) else Deadline.after(timeout)
        attempts = 0
        while True:
            self._check_alive(instance)
            attempt_timeout = deadline.clamp(self._timeouts.probe_attempt)
            if attempt_timeout <= 0:
                break
            attempts += 1
            if self._probe(instance, attempt_timeout):
                log_instance_event(
                    logger, "answered", instance, attempts=attempts, elapsed=round(deadline.elapsed(), 3)
                )
                return
            if not deadline.sleep(self._timeouts.readiness_poll_interval):
                break

        instance.mark_failed()
        raise ReadinessTimeout(
            f"Instance {instance} did not become ready within {deadline.timeout}s",
            instance_index=instance.index,
            timeout=deadline.timeout,
            details={"attempts": attempts},
        )

    def wait_all(self, instances: List[InstanceRecord], timeout: float) -> List[ReadinessTimeout]:
        """Probe every instance in parallel; return the failures ordered by index."""
        if not instances:
            return []
        deadline = Deadline.after(timeout, name="readiness")
        failures: List[ReadinessTimeout] = []
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(instances)),
            thread_name_prefix="picotest-probe",
        )
        try:
            futures = {pool.submit(self.wait_ready, inst, deadline): inst for inst in instances}
            # grace for a probe that started just before the deadline
            wait_for = deadline.remaining() + self._timeouts.readiness_poll_interval
            done, pending = concurrent.futures.wait(futures, timeout=wait_for)
            for future in done:
                error = future.exception()
                if error is None:
                    continue
                if isinstance(error, ReadinessTimeout):
                    failures.append(error)
                else:
                    instance = futures[future]
                    instance.mark_failed()
                    failures.append(
                        ReadinessTimeout(
                            f"Probing {instance} failed: {error}",
                            instance_index=instance.index,
                            timeout=timeout,
                        )
                    )
            for future in pending:
                instance = futures[future]
                instance.mark_failed()
                failures.append(
                    ReadinessTimeout(
                        f"Instance {instance} did not become ready within {timeout}s",
                        instance_index=instance.index,
                        timeout=timeout,
                    )
                )
        finally:
            deadline.cancel()
            pool.shutdown(wait=False, cancel_futures=True)
        return sorted(failures, key=lambda e: e.instance_index if e.instance_index is not None else -1)

    def _check_alive(self, instance: InstanceRecord) -> None:
        if self._supervisor is None:
            return
        if self._supervisor.is_running(instance.process_key):
            return
        exit_code = self._supervisor.exit_code(instance.process_key)
        instance.exit_code = exit_code
        instance.mark_failed()
        raise InstanceExitedError(
            f"Instance {instance} exited with code {exit_code} before becoming ready",
            instance_index=instance.index,
            exit_code=exit_code,
            details={"output": read_log_tail(instance.log_file)},
        )
