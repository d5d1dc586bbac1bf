"""Topology, migration and manifest handling for plugin directories."""

from .topology import (
    DEFAULT_TIER,
    Topology,
    Tier,
    Plugin,
    Service,
    MigrationContextVar,
    SingleNodeTopologyTransformer,
    default_topology,
    instance_layout,
    load_topology,
    parse_topology,
)
from .migration import (
    Migration,
    MigrationStatement,
    find_migrations_directories,
    make_ddl_tier_overrides,
    parse_migrations,
)
from .manifest import PluginManifest, replace_services_configuration

__all__ = [
    "DEFAULT_TIER",
    "Topology",
    "Tier",
    "Plugin",
    "Service",
    "MigrationContextVar",
    "SingleNodeTopologyTransformer",
    "default_topology",
    "instance_layout",
    "load_topology",
    "parse_topology",
    "Migration",
    "MigrationStatement",
    "find_migrations_directories",
    "make_ddl_tier_overrides",
    "parse_migrations",
    "PluginManifest",
    "replace_services_configuration",
]
