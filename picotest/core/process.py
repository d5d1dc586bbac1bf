"""Process supervision for cluster instances: start, track, terminate."""

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, IO, List, Optional, Set

import psutil

from .errors import ProcessStartupError
from .log import get_logger, log_process_event

logger = get_logger(__name__)


@dataclass
class ProcessInfo:
    """Information about a supervised process."""

    process_id: str
    pid: int
    command: List[str]
    start_time: float
    working_dir: Path
    log_file: Optional[Path] = None
    env: Dict[str, str] = field(default_factory=dict)


class ProcessSupervisor:
    """Starts instance processes in their own session and stops them reliably.

    Each process is started with ``start_new_session=True`` so that the whole
    process group (an instance may fork helpers) can be signalled at once.
    """

    def __init__(self) -> None:
        self._processes: Dict[str, subprocess.Popen] = {}
        self._log_handles: Dict[str, IO[bytes]] = {}
        self._lock = threading.Lock()

    def start(
        self,
        process_id: str,
        command: List[str],
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        log_file: Optional[Path] = None,
        settle: float = 0.0,
    ) -> ProcessInfo:
        """Start a supervised process.

        Args:
            process_id: Unique key of the process inside this supervisor
            command: Command line
            cwd: Working directory
            env: Complete environment of the child
            log_file: File receiving both stdout and stderr
            settle: Seconds to wait before checking that the child survived startup

        Raises:
            ProcessStartupError: If the process could not be started or exited
                during the settle interval
        """
        with self._lock:
            if process_id in self._processes:
                raise ProcessStartupError(f"Process {process_id} is already running")

        log_handle: Optional[IO[bytes]] = None
        try:
            if log_file is not None:
                log_file.parent.mkdir(parents=True, exist_ok=True)
                log_handle = open(log_file, "ab")
            output = log_handle if log_handle is not None else subprocess.DEVNULL
            process = subprocess.Popen(
                command,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            if log_handle is not None:
                log_handle.close()
            log_process_event(
                logger, "supervisor.start_failed", process_id=process_id, error=str(e)
            )
            raise ProcessStartupError(
                f"Failed to start process {process_id}: {e}",
                details={"command": command},
            ) from e

        info = ProcessInfo(
            process_id=process_id,
            pid=process.pid,
            command=list(command),
            start_time=time.time(),
            working_dir=Path(cwd) if cwd else Path.cwd(),
            log_file=log_file,
            env=dict(env or {}),
        )
        with self._lock:
            self._processes[process_id] = process
            if log_handle is not None:
                self._log_handles[process_id] = log_handle
        log_process_event(
            logger, "supervisor.started", pid=process.pid, process_id=process_id
        )

        if settle > 0:
            time.sleep(settle)
        exit_code = process.poll()
        if exit_code is not None:
            tail = read_log_tail(log_file) if log_file else ""
            self._cleanup_process(process_id)
            raise ProcessStartupError(
                f"Process {process_id} exited during startup with code {exit_code}",
                details={"exit_code": exit_code, "output": tail},
            )
        return info

    def stop(
        self, process_id: str, graceful: bool = True, timeout: float = 3.0,
        kill_timeout: float = 2.0,
    ) -> Optional[int]:
        """Stop a supervised process and reap it.

        With ``graceful`` the process group gets SIGTERM and ``timeout``
        seconds to exit before SIGKILL. Returns the exit code, or None when the
        process is not tracked (already stopped).
        """
        with self._lock:
            process = self._processes.get(process_id)
        if process is None:
            logger.debug("Process %s not tracked, nothing to stop", process_id)
            return None

        log_process_event(
            logger,
            "supervisor.stop",
            pid=process.pid,
            process_id=process_id,
            graceful=graceful,
        )
        try:
            if process.poll() is None and graceful:
                _signal_group(process, signal.SIGTERM)
                try:
                    exit_code = process.wait(timeout=timeout)
                    log_process_event(
                        logger, "supervisor.stopped", pid=process.pid,
                        process_id=process_id, method="sigterm", exit_code=exit_code,
                    )
                    return exit_code
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "Process %s (pid %s) ignored SIGTERM for %ss, escalating to SIGKILL",
                        process_id,
                        process.pid,
                        timeout,
                    )

            if process.poll() is None:
                _signal_group(process, signal.SIGKILL)
            try:
                exit_code = process.wait(timeout=kill_timeout)
            except subprocess.TimeoutExpired:
                logger.error(
                    "Process %s (pid %s) survived SIGKILL, killing its tree",
                    process_id,
                    process.pid,
                )
                kill_process_tree(process.pid, signal.SIGKILL, timeout=kill_timeout)
                exit_code = process.poll()
            log_process_event(
                logger, "supervisor.stopped", pid=process.pid,
                process_id=process_id, method="sigkill", exit_code=exit_code,
            )
            return exit_code
        finally:
            self._cleanup_process(process_id)

    def is_running(self, process_id: str) -> bool:
        with self._lock:
            process = self._processes.get(process_id)
        return process is not None and process.poll() is None

    def is_tracked(self, process_id: str) -> bool:
        with self._lock:
            return process_id in self._processes

    def exit_code(self, process_id: str) -> Optional[int]:
        """Exit code of a tracked process that has exited, else None."""
        with self._lock:
            process = self._processes.get(process_id)
        return process.poll() if process is not None else None

    def _cleanup_process(self, process_id: str) -> None:
        with self._lock:
            self._processes.pop(process_id, None)
            handle = self._log_handles.pop(process_id, None)
        if handle is not None:
            try:
                handle.close()
            except OSError as e:
                logger.debug("Could not close log of %s: %s", process_id, e)


def _signal_group(process: subprocess.Popen, signum: int) -> None:
    """Signal the process group of ``process``, falling back to the process."""
    try:
        os.killpg(process.pid, signum)
    except (OSError, ProcessLookupError) as e:
        logger.debug("Could not signal process group %s: %s", process.pid, e)
        try:
            process.send_signal(signum)
        except (OSError, ProcessLookupError):
            # already gone
            pass


def get_child_pids(parent_pid: int) -> List[int]:
    """Get all descendant PIDs of ``parent_pid``."""
    try:
        parent = psutil.Process(parent_pid)
        return [child.pid for child in parent.children(recursive=True)]
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
        logger.debug("Could not get children for PID %s: %s", parent_pid, e)
        return []


def kill_process_tree(
    root_pid: int, signal_num: int = signal.SIGKILL, timeout: float = 5.0
) -> bool:
    """Signal a process and all of its descendants; True if all are gone."""
    all_pids = [root_pid] + get_child_pids(root_pid)
    for pid in all_pids:
        try:
            os.kill(pid, signal_num)
        except (OSError, ProcessLookupError):
            logger.debug("PID %s already dead or inaccessible", pid)
    _, alive = psutil.wait_procs(_existing_processes(all_pids), timeout=timeout)
    if alive:
        logger.warning(
            "Processes still alive in tree rooted at %s: %s",
            root_pid,
            [p.pid for p in alive],
        )
    return not alive


def _existing_processes(pids: List[int]) -> List[psutil.Process]:
    procs = []
    for pid in pids:
        try:
            procs.append(psutil.Process(pid))
        except psutil.NoSuchProcess:
            continue
    return procs


def listening_ports(pid: int) -> Set[int]:
    """TCP ports in LISTEN state owned by ``pid`` or any of its descendants."""
    ports: Set[int] = set()
    for proc in _existing_processes([pid] + get_child_pids(pid)):
        try:
            connections = proc.net_connections(kind="inet")
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Cannot inspect sockets of %s: %s", proc.pid, e)
            continue
        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr:
                ports.add(conn.laddr.port)
    return ports


def read_log_tail(log_file: Optional[Path], max_bytes: int = 2000) -> str:
    """Last ``max_bytes`` of a process log, decoded leniently."""
    if log_file is None:
        return ""
    try:
        with open(log_file, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            return f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
