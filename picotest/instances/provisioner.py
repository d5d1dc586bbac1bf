"""Installs and enables the plugins declared by a topology."""

from typing import List, Optional

from ..bridges.admin import AdminBridge, AdminTarget
from ..core.errors import AdminError, PluginProvisionError
from ..core.log import get_logger
from ..core.time import Deadline
from ..core.types import TimeoutConfig
from ..topology.topology import Plugin, Topology

logger = get_logger(__name__)


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def plugin_statements(name: str, plugin: Plugin) -> List[str]:
    """SQL installing one plugin, in execution order."""
    version = plugin.effective_version
    statements = [f'CREATE PLUGIN IF NOT EXISTS "{name}" {version}']
    for var in plugin.migration_context:
        statements.append(
            f'ALTER PLUGIN "{name}" {version} SET migration_context.{var.name} = {_quote(var.value)}'
        )
    statements.append(f'ALTER PLUGIN "{name}" MIGRATE TO {version}')
    for service_name, service in sorted(plugin.services.items()):
        for tier in service.tiers:
            statements.append(
                f'ALTER PLUGIN "{name}" {version} ADD SERVICE "{service_name}" TO TIER "{tier}"'
            )
    statements.append(f'ALTER PLUGIN "{name}" {version} ENABLE')
    return statements


class PluginProvisioner:
    """Runs the install statements of every plugin on the main instance."""

    def __init__(self, bridge: AdminBridge, timeouts: Optional[TimeoutConfig] = None) -> None:
        self._bridge = bridge
        self._timeouts = timeouts or TimeoutConfig()

    def provision(self, main: AdminTarget, topology: Topology) -> List[str]:
        """Install every plugin; returns the names of the plugins enabled."""
        enabled = []
        for name, plugin in sorted(topology.plugins.items()):
            for statement in plugin_statements(name, plugin):
                logger.debug("Provisioning %s: %s", name, statement)
                try:
                    self._bridge.run_query(main, statement)
                except AdminError as e:
                    raise PluginProvisionError(
                        f"Failed to provision plugin {name}: {e.message}",
                        {"statement": statement},
                    ) from e
            self.wait_enabled(main, name)
            enabled.append(name)
        return enabled

    def wait_enabled(self, main: AdminTarget, name: str) -> None:
        deadline = Deadline.after(self._timeouts.plugin_enable, name=f"plugin {name}")
        query = f"SELECT enabled FROM _pico_plugin WHERE name = {_quote(name)}"
        while True:
            try:
                rows = self._bridge.run_query(
                    main, query, timeout=deadline.clamp(self._timeouts.admin_request)
                )
                if any(row and row[0] is True for row in rows.rows):
                    logger.info("Plugin %s is enabled", name)
                    return
            except AdminError as e:
                logger.debug("Plugin %s status query failed: %s", name, e)
            if not deadline.sleep(self._timeouts.readiness_poll_interval):
                raise PluginProvisionError(
                    f"Plugin {name} was not enabled within {deadline.timeout}s"
                )
