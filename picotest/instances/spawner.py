"""Materializes a cluster layout as one tool process per instance."""

import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from ..core.errors import PicotestError, PortAllocationError, ProcessStartupError, SpawnError
from ..core.log import get_logger, log_instance_event, log_cluster_event
from ..core.process import ProcessSupervisor
from ..core.types import ClusterSpec, PicotestConfig
from ..core.value_objects import ClusterId, PORTS_PER_INSTANCE
from ..topology.topology import Topology
from ..utils.filesystem import FilesystemService
from ..utils.ports import PortAllocator, busy_ports
from .command_builder import ADMIN_SOCKET_NAME, ToolCommandBuilder
from .record import InstanceRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class SpawnPlan:
    """Where and how to lay out the instances of one cluster."""

    cluster_id: ClusterId
    topology_root: Path
    data_dir: Path
    layout: List[Tuple[str, str]]
    topology: Topology
    service_password: str = field(default_factory=lambda: secrets.token_hex(16), repr=False)

    @property
    def cluster_name(self) -> str:
        return f"picotest-{self.cluster_id.short}"

    @property
    def port_owner(self) -> str:
        return str(self.cluster_id)

    @property
    def port_count(self) -> int:
        return PORTS_PER_INSTANCE * len(self.layout)

    def replication_factors(self) -> Dict[str, int]:
        """Replication factor of every tier in the layout, in spawn order."""
        tiers = dict.fromkeys(tier for _, tier in self.layout)
        return {tier: self.topology.replication_factor(tier) for tier in tiers}


class SpawnResult(NamedTuple):
    instances: List[InstanceRecord]
    partial_error: Optional[SpawnError]


class ProcessSpawner:
    """Reserves a port block and starts instances one after another.

    Spawning stops at the first failing instance. Records of the instances
    started before it are returned along with the error so that teardown can
    reclaim them.
    """

    def __init__(
        self,
        config: PicotestConfig,
        port_allocator: PortAllocator,
        supervisor: ProcessSupervisor,
        command_builder: Optional[ToolCommandBuilder] = None,
        filesystem: Optional[FilesystemService] = None,
    ) -> None:
        self._config = config
        self._ports = port_allocator
        self._supervisor = supervisor
        self._builder = command_builder or ToolCommandBuilder(config.tool, logger)
        self._fs = filesystem or FilesystemService(config)

    def spawn(self, spec: ClusterSpec, plan: SpawnPlan) -> SpawnResult:
        instances: List[InstanceRecord] = []
        if not plan.layout:
            return SpawnResult(instances, SpawnError("Cluster layout has no instances"))

        try:
            block = self._ports.reserve(plan.port_owner, plan.port_count)
        except PortAllocationError as e:
            return SpawnResult(instances, e)
        log_cluster_event(
            logger, "ports_reserved", plan.cluster_id, ports=str(block), instances=len(plan.layout)
        )

        host = self._config.tool.host
        peer = f"{host}:{block.instance_ports(0).binary}"
        share_dir = self._builder.share_dir(plan.topology_root)
        env = self._builder.build_env(spec.env, plan.topology.environment)
        try:
            config_path = self._builder.write_cluster_config(
                plan.data_dir, plan.cluster_name, plan.replication_factors()
            )
        except PicotestError as e:
            return SpawnResult(
                instances, SpawnError(f"Cannot write cluster configuration: {e.message}")
            )

        for index, (name, tier) in enumerate(plan.layout):
            try:
                record = self._spawn_one(
                    plan, index, name, tier, block, peer, config_path, share_dir, env
                )
            except SpawnError as e:
                log_cluster_event(
                    logger, "spawn_failed", plan.cluster_id, instance_index=index, error=e.message
                )
                return SpawnResult(instances, e)
            instances.append(record)

        return SpawnResult(instances, None)

    def _spawn_one(
        self, plan, index, name, tier, block, peer, config_path, share_dir, env
    ) -> InstanceRecord:
        host = self._config.tool.host
        ports = block.instance_ports(index)
        try:
            instance_dir = self._fs.instance_dir(plan.data_dir, name)
        except PicotestError as e:
            raise SpawnError(
                f"Cannot create directory of instance {name}: {e.message}", instance_index=index
            ) from e
        record = InstanceRecord(
            index=index,
            name=name,
            tier=tier,
            host=host,
            ports=ports,
            instance_dir=instance_dir,
            log_file=plan.data_dir / f"{name}.log",
            admin_socket=instance_dir / ADMIN_SOCKET_NAME,
            process_key=f"{plan.cluster_name}/{name}",
            service_password=plan.service_password,
        )

        try:
            self._builder.write_service_password(instance_dir, plan.service_password)
        except PicotestError as e:
            raise SpawnError(
                f"Cannot write service password of instance {name}: {e.message}", instance_index=index
            ) from e

        busy = busy_ports(ports, host)
        if busy:
            raise SpawnError(
                f"Port collision for instance {name}: {busy} already in use",
                instance_index=index,
                details={"ports": busy},
            )

        command = self._builder.build_command(
            record,
            cluster_name=plan.cluster_name,
            peer=peer,
            config_path=config_path,
            share_dir=share_dir,
        )
        try:
            info = self._supervisor.start(
                record.process_key,
                command,
                cwd=plan.topology_root,
                env=env,
                log_file=record.log_file,
                settle=self._config.timeouts.spawn_settle,
            )
        except ProcessStartupError as e:
            raise SpawnError(
                f"Failed to spawn instance {name}: {e.message}",
                instance_index=index,
                details=e.details,
            ) from e
        record.pid = info.pid
        log_instance_event(logger, "spawned", record, tier=tier, ports=ports.as_tuple())
        return record
