"""Pushes plugin service configuration to a running cluster."""

from typing import List, Mapping, Optional, Protocol

from ..core.errors import (
    AdminError,
    ConfigError,
    ConfigRejectedError,
    QueryFailedError,
    SerializationError,
    TopologyError,
)
from ..core.log import get_logger
from ..core.types import ConfigMap
from ..topology.topology import Topology
from ..utils.codec import to_json_string
from .admin import AdminBridge, AdminTarget

logger = get_logger(__name__)


class ConfigTarget(Protocol):
    """What the applier needs from a cluster handle."""

    topology: Topology

    def main(self) -> AdminTarget:
        ...


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_alter_statement(plugin: str, version: str, mapping: ConfigMap) -> str:
    """One ``ALTER PLUGIN ... SET`` covering every key of every service."""
    assignments: List[str] = []
    for service, values in sorted(mapping.items()):
        if not isinstance(values, Mapping):
            raise ConfigRejectedError(
                f"Configuration of service '{service}' must be a mapping",
                {"service": service},
            )
        for key, value in sorted(values.items()):
            try:
                encoded = to_json_string(value, indent=None)
            except SerializationError as e:
                raise ConfigRejectedError(
                    f"Value of {service}.{key} is not serializable: {e.message}"
                ) from e
            assignments.append(f"{service}.{key} = {quote_literal(encoded)}")
    if not assignments:
        raise ConfigRejectedError("Configuration mapping is empty")
    return f'ALTER PLUGIN "{plugin}" {version} SET ' + ", ".join(assignments)


class ConfigApplier:
    """Applies a ConfigMap to the first plugin of the cluster topology.

    Returns only after the console confirmed the change; the plugin's
    services receive their reconfiguration callbacks before that.
    """

    def __init__(self, bridge: AdminBridge) -> None:
        self._bridge = bridge

    def apply_config(
        self, handle: ConfigTarget, mapping: ConfigMap, timeout: Optional[float] = None
    ) -> None:
        topology = handle.topology
        try:
            plugin_name, plugin = topology.first_plugin()
        except TopologyError as e:
            raise ConfigRejectedError(f"Cannot apply configuration: {e.message}") from e

        unknown = sorted(set(mapping) - set(plugin.services))
        if unknown:
            raise ConfigRejectedError(
                f"Unknown service(s) for plugin {plugin_name}: {', '.join(unknown)}",
                {"unknown": unknown, "known": sorted(plugin.services)},
            )

        statement = build_alter_statement(plugin_name, plugin.effective_version, mapping)
        logger.info("Applying configuration of %s to plugin %s", sorted(mapping), plugin_name)
        try:
            self._bridge.run_query(handle.main(), statement, timeout=timeout)
        except QueryFailedError as e:
            raise ConfigRejectedError(f"Cluster rejected configuration: {e.message}", e.details) from e
        except AdminError as e:
            raise ConfigError(f"Failed to push configuration: {e.message}") from e

