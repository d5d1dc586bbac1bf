"""Plugin topology: tiers, plugins and their services as declared in topology.toml."""

import tomllib
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import TopologyError
from ..core.log import get_logger

logger = get_logger(__name__)

DEFAULT_TIER = "default"
TOPOLOGY_FILE_NAME = "topology.toml"
DEFAULT_PLUGIN_VERSION = "0.1.0"


class Tier(BaseModel):
    model_config = ConfigDict(extra="allow")

    replicasets: int = 1
    replication_factor: int = 1

    @property
    def instance_count(self) -> int:
        return self.replicasets * self.replication_factor


class MigrationContextVar(BaseModel):
    name: str
    value: str


class Service(BaseModel):
    model_config = ConfigDict(extra="allow")

    tiers: List[str] = Field(default_factory=list)


class Plugin(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: Optional[str] = None
    path: Optional[str] = None
    services: Dict[str, Service] = Field(default_factory=dict, alias="service")
    migration_context: List[MigrationContextVar] = Field(default_factory=list)

    @property
    def effective_version(self) -> str:
        return self.version or DEFAULT_PLUGIN_VERSION


class Topology(BaseModel):
    """Parsed ``topology.toml``.

    Keys follow the file: ``[tier.<name>]``, ``[plugin.<name>]`` and
    ``[plugin.<name>.service.<name>]``. Plugins are visited in name order so
    that "the first plugin" does not depend on declaration order.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    tiers: Dict[str, Tier] = Field(default_factory=dict, alias="tier")
    plugins: Dict[str, Plugin] = Field(default_factory=dict, alias="plugin")
    environment: Dict[str, str] = Field(default_factory=dict)

    def tier_counts(self) -> Dict[str, int]:
        return {name: tier.instance_count for name, tier in sorted(self.tiers.items())}

    def first_plugin(self) -> Tuple[str, Plugin]:
        if not self.plugins:
            raise TopologyError("Topology does not declare any plugin")
        name = sorted(self.plugins)[0]
        return name, self.plugins[name]

    def service_names(self) -> List[str]:
        return sorted({svc for plugin in self.plugins.values() for svc in plugin.services})

    def replication_factor(self, tier: str) -> int:
        found = self.tiers.get(tier)
        return found.replication_factor if found is not None else 1


def default_topology(tiers: Optional[Mapping[str, int]] = None) -> Topology:
    """Topology without plugins; each tier is a single replicaset."""
    counts = dict(tiers) if tiers else {DEFAULT_TIER: 1}
    return Topology(
        tiers={name: Tier(replicasets=count, replication_factor=1) for name, count in counts.items()}
    )


def parse_topology(path: Union[str, Path]) -> Topology:
    """Read and validate a topology TOML file."""
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise TopologyError(f"Failed to read file '{path}': {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise TopologyError(f"Failed to parse topology TOML from path '{path}': {e}") from e
    # older topology files spell it "enviroment"
    if "environment" not in data and "enviroment" in data:
        data["environment"] = data.pop("enviroment")
    try:
        return Topology.model_validate(data)
    except ValidationError as e:
        raise TopologyError(f"Invalid topology in '{path}': {e}") from e


def load_topology(root: Union[str, Path]) -> Optional[Topology]:
    """Topology of a plugin root directory, or None when it has no topology file."""
    path = Path(root) / TOPOLOGY_FILE_NAME
    if not path.is_file():
        logger.debug("No %s under %s", TOPOLOGY_FILE_NAME, root)
        return None
    return parse_topology(path)


def instance_layout(tiers: Mapping[str, int]) -> List[Tuple[str, str]]:
    """Instance names and tiers in spawn order: ``[("i1", tier), ...]``.

    The default tier goes first so that the main instance (index 0) always
    belongs to it when present.
    """
    ordered = sorted(tiers.items(), key=lambda item: (item[0] != DEFAULT_TIER, item[0]))
    layout = []
    for tier, count in ordered:
        for _ in range(count):
            layout.append((f"i{len(layout) + 1}", tier))
    return layout


class MigrationContextProvider(Protocol):
    def get_migration_context(self, plugin_name: str) -> List[MigrationContextVar]:
        ...


class StaticContextProvider:
    """Same context variables for every plugin."""

    def __init__(self, variables: Optional[List[MigrationContextVar]] = None) -> None:
        self._variables = list(variables or [])

    def get_migration_context(self, plugin_name: str) -> List[MigrationContextVar]:
        return list(self._variables)


class PerPluginContextProvider:
    """Context variables looked up by plugin name; unknown plugins get none."""

    def __init__(self, variables: Mapping[str, List[MigrationContextVar]]) -> None:
        self._variables = dict(variables)

    def get_migration_context(self, plugin_name: str) -> List[MigrationContextVar]:
        return list(self._variables.get(plugin_name, []))


class SingleNodeTopologyTransformer:
    """Collapses a topology to one instance on the default tier.

    Every service of every plugin is moved onto the default tier and each
    plugin's migration context is replaced with what the provider returns.
    Environment is left unchanged.
    """

    def __init__(self, provider: Optional[MigrationContextProvider] = None) -> None:
        self._provider: MigrationContextProvider = provider or StaticContextProvider()

    def set_migration_context_provider(self, provider: MigrationContextProvider) -> None:
        self._provider = provider

    def transform(self, source: Topology) -> Topology:
        topology = source.model_copy(deep=True)
        topology.tiers = {DEFAULT_TIER: Tier(replicasets=1, replication_factor=1)}
        for plugin_name, plugin in topology.plugins.items():
            plugin.migration_context = self._provider.get_migration_context(plugin_name)
            for service in plugin.services.values():
                service.tiers = [DEFAULT_TIER]
        return topology
