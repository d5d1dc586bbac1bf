"""Cross-process port block reservation.

Concurrent test sessions on one host coordinate through a lock file and a
JSON ledger living next to it. Each owner holds one contiguous block; blocks
of owners whose process is gone are reclaimed on the next reservation.
"""

import os
import socket
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

import psutil
from filelock import FileLock, Timeout

from ..core.errors import PortAllocationError, DeserializationError
from ..core.log import get_logger
from ..core.types import PortConfig
from ..core.value_objects import PortBlock
from .codec import to_json_string, from_json_string
from .filesystem import atomic_write, ensure_dir

logger = get_logger(__name__)

LOCK_FILE_NAME = "picotest-ports.lock"
LEDGER_FILE_NAME = "picotest-ports.json"


class PortAllocator(Protocol):
    """Protocol for port allocation to enable dependency injection."""

    def reserve(self, owner: str, count: int) -> PortBlock:
        """Reserve ``count`` contiguous ports for ``owner``."""

    def release(self, owner: str) -> None:
        """Release the block held by ``owner``; unknown owners are ignored."""


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether ``port`` can be bound on ``host`` right now."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


def busy_ports(ports: Iterable[int], host: str = "127.0.0.1") -> list:
    return [port for port in ports if not is_port_free(port, host)]


class FileLockPortAllocator:
    """Reserves contiguous port blocks under a ``filelock.FileLock``.

    The ledger maps owner to ``{"pid", "start", "end"}``. A block is handed
    out only if it overlaps no live ledger entry and every port in it passes
    a bind probe.
    """

    def __init__(self, config: Optional[PortConfig] = None, host: str = "127.0.0.1") -> None:
        self._config = config or PortConfig()
        self._host = host
        lock_dir = ensure_dir(
            Path(self._config.lock_dir)
            if self._config.lock_dir is not None
            else Path(tempfile.gettempdir())
        )
        self.lock_path = lock_dir / LOCK_FILE_NAME
        self.ledger_path = lock_dir / LEDGER_FILE_NAME
        self._lock = FileLock(str(self.lock_path), timeout=self._config.lock_timeout)

    def reserve(self, owner: str, count: int) -> PortBlock:
        if count <= 0:
            raise PortAllocationError(f"Cannot reserve {count} ports")
        try:
            with self._lock:
                ledger = self._purge_dead(self._read_ledger())
                if owner in ledger:
                    raise PortAllocationError(
                        f"Owner {owner} already holds ports {ledger[owner]['start']}-"
                        f"{ledger[owner]['end'] - 1}"
                    )
                block = self._find_block(ledger, count)
                ledger[owner] = {"pid": os.getpid(), "start": block.start, "end": block.end}
                self._write_ledger(ledger)
        except Timeout as e:
            raise PortAllocationError(
                f"Timed out after {self._config.lock_timeout}s waiting for {self.lock_path}"
            ) from e
        logger.debug("Reserved ports %s for %s", block, owner)
        return block

    def release(self, owner: str) -> None:
        try:
            with self._lock:
                ledger = self._read_ledger()
                entry = ledger.pop(owner, None)
                if entry is None:
                    logger.debug("No port reservation held by %s", owner)
                    return
                self._write_ledger(self._purge_dead(ledger))
        except Timeout as e:
            raise PortAllocationError(
                f"Timed out after {self._config.lock_timeout}s waiting for {self.lock_path}"
            ) from e
        logger.debug("Released ports %s-%s of %s", entry["start"], entry["end"] - 1, owner)

    def reservations(self) -> Dict[str, PortBlock]:
        """Snapshot of the live reservations of every owner on this host."""
        with self._lock:
            ledger = self._purge_dead(self._read_ledger())
        return {
            owner: PortBlock(entry["start"], entry["end"] - entry["start"])
            for owner, entry in ledger.items()
        }

    def _find_block(self, ledger: Dict[str, Dict[str, int]], count: int) -> PortBlock:
        taken = [
            PortBlock(entry["start"], entry["end"] - entry["start"])
            for entry in ledger.values()
        ]
        start = self._config.base_port
        while start + count <= self._config.max_port:
            candidate = PortBlock(start, count)
            clash = next((b for b in taken if b.overlaps(candidate)), None)
            if clash is not None:
                start = clash.end
                continue
            busy = busy_ports(candidate.ports(), self._host)
            if busy:
                start = max(busy) + 1
                continue
            return candidate
        raise PortAllocationError(
            f"No free block of {count} ports in range "
            f"{self._config.base_port}-{self._config.max_port}",
            details={"count": count, "reserved": len(taken)},
        )

    def _read_ledger(self) -> Dict[str, Dict[str, int]]:
        if not self.ledger_path.exists():
            return {}
        try:
            data = from_json_string(self.ledger_path.read_text(encoding="utf-8"))
        except (OSError, DeserializationError) as e:
            logger.warning("Discarding unreadable port ledger %s: %s", self.ledger_path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_ledger(self, ledger: Dict[str, Dict[str, int]]) -> None:
        atomic_write(self.ledger_path, to_json_string(ledger))

    @staticmethod
    def _purge_dead(ledger: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
        alive = {}
        for owner, entry in ledger.items():
            if psutil.pid_exists(entry.get("pid", -1)):
                alive[owner] = entry
            else:
                logger.info("Reclaiming ports of dead owner %s (pid %s)", owner, entry.get("pid"))
        return alive
