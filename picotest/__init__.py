"""
picotest: test-cluster lifecycle harness for picodata plugins

Launches a declared multi-node topology as local processes, waits until
every instance answers, exposes admin queries, scripts, RPC calls and config
pushes against the running cluster, and tears everything down again
regardless of how the test ended.
"""

__version__ = "0.1.0"

from .core.enums import InstanceState, ProbeKind, ScriptDialect
from .core.errors import (
    PicotestError,
    SpawnError,
    PortAllocationError,
    ReadinessTimeout,
    InstanceExitedError,
    AdminError,
    RpcError,
    ConfigError,
    OrchestratorError,
    InvalidClusterSpecError,
)
from .core.types import ClusterSpec, PicotestConfig, ConfigMap
from .instances.handle import ClusterHandle, InstanceRef
from .instances.orchestrator import ClusterOrchestrator, run_cluster

__all__ = [
    "__version__",
    "InstanceState",
    "ProbeKind",
    "ScriptDialect",
    "PicotestError",
    "SpawnError",
    "PortAllocationError",
    "ReadinessTimeout",
    "InstanceExitedError",
    "AdminError",
    "RpcError",
    "ConfigError",
    "OrchestratorError",
    "InvalidClusterSpecError",
    "ClusterSpec",
    "PicotestConfig",
    "ConfigMap",
    "ClusterHandle",
    "InstanceRef",
    "ClusterOrchestrator",
    "run_cluster",
]
