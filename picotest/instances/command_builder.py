"""Command lines, cluster configuration and environments for the external cluster tool."""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

import yaml

from ..core.errors import AtomicWriteError
from ..core.log import Logger
from ..core.types import ToolConfig
from ..utils.filesystem import atomic_write
from .record import InstanceRecord

ADMIN_SOCKET_NAME = "admin.sock"
CLUSTER_CONFIG_NAME = "picodata.yaml"
SERVICE_PASSWORD_FILE = ".picodata-cookie"


class CommandBuilder(Protocol):
    """Protocol for command builders to enable dependency injection."""

    def build_command(
        self, record: InstanceRecord, cluster_name: str, peer: str,
        config_path: Path, share_dir: Optional[Path],
    ) -> List[str]:
        """Build command line arguments for instance startup."""


def cluster_config(cluster_name: str, replication_factors: Mapping[str, int]) -> Dict[str, Any]:
    """Cluster section declaring every tier with its replication factor.

    The tool only accepts ``--tier`` values declared here, and the
    replication factor is a per-tier bootstrap setting.
    """
    return {
        "cluster": {
            "name": cluster_name,
            "tier": {
                tier: {"replication_factor": factor}
                for tier, factor in replication_factors.items()
            },
        }
    }


class ToolCommandBuilder:
    """Builds ``<binary> run ...`` command lines, one per instance."""

    def __init__(self, tool: ToolConfig, logger: Logger) -> None:
        self._tool = tool
        self._logger = logger

    def write_cluster_config(
        self, data_dir: Path, cluster_name: str, replication_factors: Mapping[str, int]
    ) -> Path:
        """Write the configuration file shared by every instance of a cluster."""
        path = Path(data_dir) / CLUSTER_CONFIG_NAME
        document = cluster_config(cluster_name, replication_factors)
        atomic_write(path, yaml.safe_dump(document, default_flow_style=False))
        self._logger.debug("Cluster configuration %s: %s", path, document)
        return path

    def write_service_password(self, instance_dir: Path, password: str) -> Path:
        """Service user password the instance reads from its directory, mode 0600."""
        path = Path(instance_dir) / SERVICE_PASSWORD_FILE
        atomic_write(path, password)
        try:
            os.chmod(path, 0o600)
        except OSError as e:
            raise AtomicWriteError(f"Cannot restrict permissions of {path}: {e}") from e
        return path

    def build_command(
        self, record: InstanceRecord, cluster_name: str, peer: str,
        config_path: Path, share_dir: Optional[Path],
    ) -> List[str]:
        host = record.host
        command = [self._tool.binary, *self._tool.run_args]
        command.extend([
            "--config", str(config_path),
            "--cluster-name", cluster_name,
            "--instance-name", record.name,
            "--instance-dir", str(record.instance_dir),
            "--iproto-listen", f"{host}:{record.ports.binary}",
            "--http-listen", f"{host}:{record.ports.http}",
            "--pg-listen", f"{host}:{record.ports.pg}",
            "--peer", peer,
            "--tier", record.tier,
        ])
        if record.admin_socket is not None:
            command.extend(["--admin-sock", str(record.admin_socket)])
        if share_dir is not None:
            command.extend(["--share-dir", str(share_dir)])
        command.extend(self._tool.extra_args)
        self._logger.debug("Command for %s: %s", record, " ".join(command))
        return command

    def build_env(
        self, caller_env: Mapping[str, str], topology_env: Optional[Mapping[str, str]] = None
    ) -> Dict[str, str]:
        """Passthrough variables, then topology environment, then caller overrides."""
        env = {
            key: os.environ[key] for key in self._tool.env_passthrough if key in os.environ
        }
        env.update(topology_env or {})
        env.update(caller_env)
        return env

    def share_dir(self, topology_root: Path) -> Optional[Path]:
        """Build profile directory holding the plugin packages, if it exists."""
        candidate = Path(topology_root) / "target" / self._tool.build_profile
        return candidate if candidate.is_dir() else None
