"""Cluster handle and read-only instance references."""

from pathlib import Path
from typing import Any, Dict, List, Optional

from ..bridges.admin import AdminBridge, RowSet
from ..bridges.config_applier import ConfigApplier
from ..bridges.rpc import RpcClient
from ..bridges.unit_runner import UnitTestRunner, plugin_dylib_path
from ..core.enums import InstanceState, ScriptDialect
from ..core.log import get_logger
from ..core.process import listening_ports
from ..core.types import ClusterSpec, ConfigMap
from ..core.value_objects import ClusterId, InstancePorts
from ..topology.topology import Topology
from .record import InstanceRecord
from .teardown import TeardownGuard

logger = get_logger(__name__)


class InstanceRef:
    """Read-only view of one instance with the operations callers run on it."""

    __slots__ = ("_record", "_admin", "_rpc")

    def __init__(self, record: InstanceRecord, admin: AdminBridge, rpc: RpcClient) -> None:
        self._record = record
        self._admin = admin
        self._rpc = rpc

    @property
    def index(self) -> int:
        return self._record.index

    @property
    def name(self) -> str:
        return self._record.name

    @property
    def tier(self) -> str:
        return self._record.tier

    @property
    def host(self) -> str:
        return self._record.host

    @property
    def ports(self) -> InstancePorts:
        return self._record.ports

    @property
    def pid(self) -> Optional[int]:
        return self._record.pid

    @property
    def state(self) -> InstanceState:
        return self._record.state

    @property
    def admin_socket(self) -> Optional[Path]:
        return self._record.admin_socket

    @property
    def instance_dir(self) -> Path:
        return self._record.instance_dir

    @property
    def log_file(self) -> Optional[Path]:
        return self._record.log_file

    def run_query(self, text: str, timeout: Optional[float] = None) -> RowSet:
        return self._admin.run_query(self._record, text, timeout=timeout)

    def run_script(
        self, text: str, dialect: ScriptDialect = ScriptDialect.LUA, timeout: Optional[float] = None
    ) -> str:
        return self._admin.run_script(self._record, text, dialect=dialect, timeout=timeout)

    async def execute_rpc(
        self,
        plugin_name: str,
        path: str,
        service_name: str,
        plugin_version: str,
        request: Any,
        response_type: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        return await self._rpc.execute_rpc(
            self._record,
            plugin_name,
            path,
            service_name,
            plugin_version,
            request,
            response_type=response_type,
            timeout=timeout,
        )

    def execute_rpc_sync(self, *args: Any, **kwargs: Any) -> Any:
        return self._rpc.execute_rpc_sync(self._record, *args, **kwargs)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, InstanceRef) and other._record is self._record

    def __hash__(self) -> int:
        return id(self._record)

    def __repr__(self) -> str:
        return f"InstanceRef({self._record!r})"


class ClusterHandle:
    """A running cluster: ordered instances, topology and the teardown guard.

    Instance 0 is the main instance. Records stay owned by the handle;
    callers get ``InstanceRef`` views.
    """

    def __init__(
        self,
        records: List[InstanceRecord],
        topology_root: Path,
        topology: Topology,
        cluster_id: ClusterId,
        data_dir: Path,
        spec: ClusterSpec,
        guard: TeardownGuard,
        admin: AdminBridge,
        rpc: RpcClient,
        build_profile: str = "debug",
    ) -> None:
        if not records:
            raise ValueError("ClusterHandle needs at least one instance")
        self._records = list(records)
        self.topology_root = Path(topology_root)
        self.topology = topology
        self.cluster_id = cluster_id
        self.data_dir = Path(data_dir)
        self.spec = spec
        self.guard = guard
        self._admin = admin
        self._rpc = rpc
        self._applier = ConfigApplier(admin)
        self._build_profile = build_profile
        self._refs = [InstanceRef(record, admin, rpc) for record in self._records]

    def main(self) -> InstanceRef:
        return self._refs[0]

    def instances(self) -> List[InstanceRef]:
        return list(self._refs)

    def instance(self, index: int) -> InstanceRef:
        return self._refs[index]

    def by_name(self, name: str) -> InstanceRef:
        for ref in self._refs:
            if ref.name == name:
                return ref
        raise KeyError(name)

    def __len__(self) -> int:
        return len(self._refs)

    def stop_instance(self, ref: InstanceRef) -> None:
        """Stop one instance; the rest of the cluster keeps running."""
        record = self._record_of(ref)
        self.guard.stop_instance(record)

    def apply_config(self, mapping: ConfigMap, timeout: Optional[float] = None) -> None:
        self._applier.apply_config(self, mapping, timeout=timeout)

    def run_unit_test(self, test_fn_name: str, timeout: Optional[float] = None) -> str:
        """Call a unit-test symbol of the plugin library inside the main instance."""
        runner = UnitTestRunner(
            self._admin, plugin_dylib_path(self.topology_root, self._build_profile)
        )
        return runner.run(self.main(), test_fn_name, timeout=timeout)

    def verify_ports(self) -> Dict[str, List[int]]:
        """Recorded ports each live instance is not listening on.

        An empty result means every recorded port belongs to the instance's
        process tree. The admin port is only expected when no admin socket
        is used.
        """
        missing: Dict[str, List[int]] = {}
        for record in self._records:
            if not record.state.is_live() or record.pid is None:
                continue
            expected = {record.ports.binary, record.ports.http, record.ports.pg}
            if record.admin_socket is None:
                expected.add(record.ports.admin)
            absent = sorted(expected - listening_ports(record.pid))
            if absent:
                missing[record.name] = absent
        if missing:
            logger.warning("Instances not listening on recorded ports: %s", missing)
        return missing

    @property
    def released(self) -> bool:
        return self.guard.released

    def release(self) -> None:
        self.guard.release()

    def _record_of(self, ref: InstanceRef) -> InstanceRecord:
        record = self._records[ref.index] if 0 <= ref.index < len(self._records) else None
        if record is None or self._refs[ref.index] != ref:
            raise ValueError(f"{ref!r} does not belong to cluster {self.cluster_id}")
        return record

    def __enter__(self) -> "ClusterHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"ClusterHandle({self.cluster_id}, instances={len(self._records)})"
