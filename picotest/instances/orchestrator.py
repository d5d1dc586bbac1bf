"""Cluster orchestrator: brings a topology up, or tears down everything it made."""

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..core.context import ApplicationContext
from ..core.config import get_config
from ..core.errors import (
    InvalidClusterSpecError,
    OrchestratorError,
    PicotestError,
    ReadinessTimeout,
)
from ..core.log import get_logger, log_cluster_event, log_context
from ..core.types import ClusterSpec
from ..core.value_objects import ClusterId
from ..topology.manifest import PluginManifest
from ..topology.migration import ddl_override_provider
from ..topology.topology import (
    DEFAULT_TIER,
    SingleNodeTopologyTransformer,
    Topology,
    default_topology,
    instance_layout,
    load_topology,
)
from .handle import ClusterHandle
from .provisioner import PluginProvisioner
from .readiness import ReadinessProber, make_probe
from .spawner import ProcessSpawner, SpawnPlan
from .teardown import TeardownGuard

logger = get_logger(__name__)


def validate_spec(spec: ClusterSpec) -> None:
    """Reject a spec before anything is created."""
    path = Path(spec.topology_path)
    if not path.exists():
        raise InvalidClusterSpecError(f"Topology path does not exist: {path}")
    if not path.is_dir():
        raise InvalidClusterSpecError(f"Topology path is not a directory: {path}")
    if spec.timeout <= 0:
        raise InvalidClusterSpecError(f"Readiness timeout must be positive, got {spec.timeout}")
    if spec.tiers is not None:
        validate_tiers(spec.tiers)
    if spec.plugin_config_path is not None and not Path(spec.plugin_config_path).is_file():
        raise InvalidClusterSpecError(
            f"Plugin configuration file does not exist: {spec.plugin_config_path}"
        )


def validate_tiers(tiers: Dict[str, int]) -> None:
    if not tiers:
        raise InvalidClusterSpecError("Cluster must have at least one tier")
    bad = {name: count for name, count in tiers.items() if count < 1}
    if bad:
        raise InvalidClusterSpecError(
            f"Every tier needs at least one instance: {bad}", details={"tiers": dict(tiers)}
        )


class ClusterOrchestrator:
    """Runs the lifecycle of clusters on the calling thread.

    ``run_cluster`` validates the spec, resolves the topology, spawns one
    process per instance, probes them all against one deadline and returns a
    handle. Any failure on the way releases the teardown guard, so no
    process, port reservation or manifest change outlives the call, and is
    reported as a single OrchestratorError.
    """

    def __init__(
        self,
        context: ApplicationContext,
        spawner: Optional[ProcessSpawner] = None,
        prober: Optional[ReadinessProber] = None,
        provisioner: Optional[PluginProvisioner] = None,
    ) -> None:
        self._ctx = context
        config = context.config
        self._spawner = spawner or ProcessSpawner(
            config,
            context.port_allocator,
            context.process_supervisor,
            filesystem=context.filesystem,
        )
        self._prober = prober or ReadinessProber(
            make_probe(config.readiness, context.admin_bridge),
            supervisor=context.process_supervisor,
            timeouts=config.timeouts,
            max_workers=config.readiness.max_workers,
        )
        self._provisioner = provisioner or PluginProvisioner(context.admin_bridge, config.timeouts)

    def resolve_topology(self, spec: ClusterSpec, root: Path) -> Tuple[Topology, Dict[str, int]]:
        """Topology to deploy and its instance count per tier."""
        topology = load_topology(root)
        if spec.single_node:
            if topology is None:
                return default_topology(), {DEFAULT_TIER: 1}
            target_dir = root / "target" / self._ctx.config.tool.build_profile
            transformer = SingleNodeTopologyTransformer(ddl_override_provider(target_dir, DEFAULT_TIER))
            return transformer.transform(topology), {DEFAULT_TIER: 1}
        if spec.tiers is not None:
            return topology or default_topology(spec.tiers), dict(spec.tiers)
        if topology is not None and topology.tiers:
            return topology, topology.tier_counts()
        return topology or default_topology(), {DEFAULT_TIER: 1}

    def run_cluster(self, spec: ClusterSpec) -> ClusterHandle:
        validate_spec(spec)
        cluster_id = ClusterId.generate()
        root = Path(spec.topology_path).resolve()
        with log_context(cluster=cluster_id.short):
            log_cluster_event(logger, "starting", cluster_id, root=str(root))
            guard = TeardownGuard(
                str(cluster_id),
                self._ctx.process_supervisor,
                self._ctx.port_allocator,
                port_owner=str(cluster_id),
                timeouts=self._ctx.config.timeouts,
            )
            try:
                handle = self._bring_up(spec, cluster_id, root, guard)
            except (PicotestError, OSError) as e:
                guard.release()
                index = getattr(e, "instance_index", None)
                log_cluster_event(
                    logger, "failed", cluster_id, instance_index=index, error=str(e)
                )
                raise OrchestratorError(
                    f"Cluster {cluster_id.short} failed to start: {e}",
                    instance_index=index,
                    cause=e,
                    details=getattr(e, "details", {}),
                ) from e
            except BaseException:
                guard.release()
                raise
            log_cluster_event(logger, "ready", cluster_id, instances=len(handle))
            return handle

    def recreate(self, handle: ClusterHandle) -> ClusterHandle:
        """Tear a cluster down and bring its spec up again."""
        handle.release()
        return self.run_cluster(handle.spec)

    def _bring_up(
        self, spec: ClusterSpec, cluster_id: ClusterId, root: Path, guard: TeardownGuard
    ) -> ClusterHandle:
        config = self._ctx.config
        topology, tiers = self.resolve_topology(spec, root)
        validate_tiers(tiers)

        data_dir = self._ctx.filesystem.new_cluster_dir(root)
        guard.add_cleanup("data directory", lambda: self._ctx.filesystem.remove_cluster_dir(data_dir))

        if spec.plugin_config_path is not None:
            manifest = PluginManifest(root, topology, config.tool.build_profile)
            manifest.backup()
            guard.add_cleanup("manifest restore", manifest.restore)
            manifest.apply_plugin_configuration(spec.plugin_config_path)

        plan = SpawnPlan(
            cluster_id=cluster_id,
            topology_root=root,
            data_dir=data_dir,
            layout=instance_layout(tiers),
            topology=topology,
        )
        instances, spawn_error = self._spawner.spawn(spec, plan)
        guard.track(instances)
        if spawn_error is not None:
            raise spawn_error

        failures = self._prober.wait_all(instances, spec.timeout)
        if failures:
            raise self._readiness_failure(failures)
        for record in instances:
            record.mark_ready()

        handle = ClusterHandle(
            instances,
            topology_root=root,
            topology=topology,
            cluster_id=cluster_id,
            data_dir=data_dir,
            spec=spec,
            guard=guard,
            admin=self._ctx.admin_bridge,
            rpc=self._ctx.rpc_client,
            build_profile=config.tool.build_profile,
        )
        if spec.install_plugins and topology.plugins:
            self._provisioner.provision(handle.main(), topology)
        if spec.config:
            handle.apply_config(spec.config)
        return handle

    @staticmethod
    def _readiness_failure(failures: List[ReadinessTimeout]) -> ReadinessTimeout:
        first = failures[0]
        if len(failures) == 1:
            return first
        indices = [f.instance_index for f in failures]
        return type(first)(
            f"{len(failures)} instances failed readiness: {indices}; first: {first.message}",
            instance_index=first.instance_index,
            details={"failed": indices, **first.details},
        )


_default_context: Optional[ApplicationContext] = None
_default_context_lock = threading.Lock()


def default_context() -> ApplicationContext:
    global _default_context
    with _default_context_lock:
        if _default_context is None:
            _default_context = ApplicationContext.create(get_config())
        return _default_context


def run_cluster(
    path_or_spec: Union[str, Path, ClusterSpec],
    timeout: Optional[float] = None,
    context: Optional[ApplicationContext] = None,
    **spec_fields: Any,
) -> ClusterHandle:
    """Bring a cluster up from a topology directory or a prepared spec.

    Example:
        >>> with run_cluster("path/to/plugin", timeout=30) as cluster:
        ...     assert cluster.main().run_query("SELECT 1").scalar() == 1
    """
    context = context or default_context()
    try:
        if isinstance(path_or_spec, ClusterSpec):
            update = dict(spec_fields)
            if timeout is not None:
                update["timeout"] = timeout
            spec = path_or_spec.model_copy(update=update) if update else path_or_spec
        else:
            spec = ClusterSpec(
                topology_path=Path(path_or_spec),
                timeout=timeout if timeout is not None else context.config.timeouts.readiness_default,
                **spec_fields,
            )
    except ValidationError as e:
        raise InvalidClusterSpecError(f"Invalid cluster spec: {e}") from e
    return ClusterOrchestrator(context).run_cluster(spec)
