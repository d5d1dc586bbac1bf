"""Passive description of one spawned instance."""

import threading
from pathlib import Path
from typing import Any, Optional

from ..core.enums import InstanceState
from ..core.value_objects import InstancePorts

_FIXED_FIELDS = frozenset({"index", "name", "tier", "host", "ports"})


class InstanceRecord:
    """One spawned process: identity, fixed ports and lifecycle state.

    Identity and ports are set once at construction; assigning them later
    raises AttributeError. State moves ``STARTING -> READY -> STOPPED | FAILED``
    through the ``mark_*`` methods only.
    """

    def __init__(
        self,
        index: int,
        name: str,
        tier: str,
        host: str,
        ports: InstancePorts,
        instance_dir: Path,
        log_file: Optional[Path] = None,
        admin_socket: Optional[Path] = None,
        pid: Optional[int] = None,
        process_key: Optional[str] = None,
        service_password: Optional[str] = None,
    ) -> None:
        object.__setattr__(self, "index", index)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "tier", tier)
        object.__setattr__(self, "host", host)
        object.__setattr__(self, "ports", ports)
        self.instance_dir = Path(instance_dir)
        self.log_file = log_file
        self.admin_socket = admin_socket
        self.pid = pid
        self.process_key = process_key or name
        self.service_password = service_password
        self.exit_code: Optional[int] = None
        self._state = InstanceState.STARTING
        self._state_lock = threading.Lock()

    def __setattr__(self, key: str, value: Any) -> None:
        if key in _FIXED_FIELDS:
            raise AttributeError(f"InstanceRecord.{key} is fixed at spawn time")
        super().__setattr__(key, value)

    @property
    def state(self) -> InstanceState:
        return self._state

    def mark_ready(self) -> None:
        with self._state_lock:
            if self._state != InstanceState.STARTING:
                raise ValueError(f"Instance {self.name} cannot become ready from {self._state.value}")
            self._state = InstanceState.READY

    def mark_failed(self) -> None:
        with self._state_lock:
            if self._state == InstanceState.STOPPED:
                return
            self._state = InstanceState.FAILED

    def mark_stopped(self) -> bool:
        """Move a live instance to STOPPED. FAILED stays FAILED; returns whether it changed."""
        with self._state_lock:
            if not self._state.is_live():
                return False
            self._state = InstanceState.STOPPED
            return True

    @property
    def binary_address(self) -> str:
        return f"{self.host}:{self.ports.binary}"

    @property
    def http_url(self) -> str:
        return f"http://{self.host}:{self.ports.http}"

    def __str__(self) -> str:
        return f"{self.name}[{self.index}]"

    def __repr__(self) -> str:
        return (
            f"InstanceRecord(index={self.index}, name={self.name!r}, tier={self.tier!r}, "
            f"pid={self.pid}, ports={self.ports.as_tuple()}, state={self._state.value})"
        )
