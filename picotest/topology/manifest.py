"""Plugin manifest: locate, back up, rewrite service defaults and restore."""

from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..core.errors import ManifestError, PathError, FilesystemError
from ..core.log import get_logger
from ..utils.filesystem import atomic_write, copy_file, safe_remove
from .topology import Topology

logger = get_logger(__name__)

MANIFEST_FILE_NAME = "manifest.yaml"
MANIFEST_BACKUP_FILE_NAME = "manifest.backup.yaml"
MANIFEST_SERVICES = "services"
MANIFEST_SERVICE_NAME = "name"
MANIFEST_DEFAULT_CONFIGURATION = "default_configuration"


def load_yaml(path: Union[str, Path]) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except OSError as e:
        raise ManifestError(f"Failed to open YAML file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ManifestError(f"Failed to parse YAML content of {path}: {e}") from e


def replace_services_configuration(
    plugin_config: Dict[str, Any], manifest: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace ``default_configuration`` of every manifest service found in ``plugin_config``.

    The manifest is changed in place and returned. Services missing from
    ``plugin_config`` keep their defaults.
    """
    if not isinstance(manifest, dict) or MANIFEST_SERVICES not in manifest:
        raise ManifestError("Failed to get services mapping from plugin manifest")
    services = manifest[MANIFEST_SERVICES]
    if not isinstance(services, list):
        raise ManifestError("Plugin manifest services should be a sequence")

    for service in services:
        name = service.get(MANIFEST_SERVICE_NAME) if isinstance(service, dict) else None
        if name is None:
            raise ManifestError("Failed to get name of the service from plugin manifest")
        if name not in plugin_config:
            logger.debug("Service %s was not found in provided plugin configuration", name)
            continue
        if MANIFEST_DEFAULT_CONFIGURATION not in service:
            raise ManifestError(
                f"Failed to get default configuration of service {name} from plugin manifest"
            )
        logger.debug("Replacing configuration of service %s", name)
        service[MANIFEST_DEFAULT_CONFIGURATION] = plugin_config[name]
    return manifest


class PluginManifest:
    """Manifest of the first plugin of a topology in a given build profile."""

    def __init__(self, topology_root: Path, topology: Topology, profile: str = "debug") -> None:
        plugin_name, plugin = topology.first_plugin()
        self.plugin_name = plugin_name
        self.version = plugin.effective_version
        self.directory = Path(topology_root) / "target" / profile / plugin_name / self.version

    @property
    def path(self) -> Path:
        return self.directory / MANIFEST_FILE_NAME

    @property
    def backup_path(self) -> Path:
        return self.directory / MANIFEST_BACKUP_FILE_NAME

    def backup(self) -> None:
        try:
            copy_file(self.path, self.backup_path)
        except (PathError, FilesystemError) as e:
            raise ManifestError(f"Failed to back up plugin manifest file: {e.message}") from e

    def restore(self) -> bool:
        """Put the backup back in place; False when there was none."""
        if not self.backup_path.exists():
            return False
        try:
            copy_file(self.backup_path, self.path)
        except (PathError, FilesystemError) as e:
            raise ManifestError(
                f"Failed to restore plugin manifest file from backup: {e.message}"
            ) from e
        if not safe_remove(self.backup_path):
            raise ManifestError("Failed to remove backup manifest file")
        logger.debug("Restored plugin manifest %s", self.path)
        return True

    def apply_plugin_configuration(self, plugin_config_path: Union[str, Path]) -> None:
        logger.info(
            "Applying plugin configuration from %s to manifest %s",
            plugin_config_path,
            self.path,
        )
        plugin_config = load_yaml(plugin_config_path) or {}
        if not isinstance(plugin_config, dict):
            raise ManifestError(f"Plugin configuration {plugin_config_path} must be a mapping")
        manifest = replace_services_configuration(plugin_config, load_yaml(self.path))
        atomic_write(self.path, yaml.safe_dump(manifest, sort_keys=False))
