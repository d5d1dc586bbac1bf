"""Instance management components.

API:
    - ClusterOrchestrator: brings clusters up and down
    - ClusterHandle, InstanceRef: what callers hold while a cluster runs
    - TeardownGuard: releases everything a cluster acquired
"""

from .handle import ClusterHandle, InstanceRef
from .orchestrator import ClusterOrchestrator, run_cluster
from .teardown import TeardownGuard

__all__ = [
    "ClusterHandle",
    "InstanceRef",
    "ClusterOrchestrator",
    "run_cluster",
    "TeardownGuard",
]
