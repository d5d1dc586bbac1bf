"""Core enumerations for picotest.

Separated from types.py to break circular dependencies. This module contains
only enum definitions with no dependencies on other core modules.
"""

from enum import Enum


class InstanceState(Enum):
    """Lifecycle state of one spawned instance."""

    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"
    FAILED = "failed"

    def is_live(self) -> bool:
        return self in (InstanceState.STARTING, InstanceState.READY)


class ProbeKind(Enum):
    """Control surface used to decide readiness."""

    ADMIN = "admin"
    HTTP = "http"


class ScriptDialect(Enum):
    """Language understood by the admin console."""

    SQL = "sql"
    LUA = "lua"
