"""Plugin SQL migrations: file naming, statement splitting and tier variables."""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

from ..core.errors import FilesystemError, MigrationError
from ..core.log import get_logger
from ..utils.filesystem import read_text
from .topology import MigrationContextVar, PerPluginContextProvider

logger = get_logger(__name__)

PICO_UP = "-- pico.UP"
PICO_DOWN = "-- pico.DOWN"
TIER_VARIABLE_PATTERN = "in tier @_plugin_config."
SKIPPED_TARGET_DIRS = frozenset({"build", "deps", "examples", "incremental", ".fingerprint"})

_IDENTIFIER = re.compile(r"\w*")


@dataclass(frozen=True)
class MigrationStatement:
    text: str

    def is_line_comment(self) -> bool:
        return self.text.startswith("--")

    def is_pico_up(self) -> bool:
        return self.text == PICO_UP

    def is_pico_down(self) -> bool:
        return self.text == PICO_DOWN

    def extract_tier_variables(self) -> List[str]:
        """Names of ``@_plugin_config`` variables used as a tier, in order.

        The pattern is matched case-insensitively but names keep their
        original case.
        """
        lowered = self.text.lower()
        names = []
        start = lowered.find(TIER_VARIABLE_PATTERN)
        while start != -1:
            rest = self.text[start + len(TIER_VARIABLE_PATTERN):]
            names.append(_IDENTIFIER.match(rest).group(0))
            start = lowered.find(TIER_VARIABLE_PATTERN, start + 1)
        return names


@dataclass
class Migration:
    version: int
    name: str
    statements: List[MigrationStatement] = field(default_factory=list)
    up_range: Tuple[int, int] = (0, 0)
    down_range: Tuple[int, int] = (0, 0)

    def up_statements(self) -> List[MigrationStatement]:
        return self.statements[self.up_range[0]:self.up_range[1]]

    def down_statements(self) -> List[MigrationStatement]:
        return self.statements[self.down_range[0]:self.down_range[1]]


def sort_migrations(migrations: Sequence[Migration]) -> List[Migration]:
    return sorted(migrations, key=lambda m: m.version)


def parse_migration_file_name(file_name: Union[str, Path]) -> Tuple[int, str]:
    """Split ``NNNN_name.sql`` into version and name."""
    base = Path(file_name).name
    if not base or base in (".", ".."):
        raise MigrationError("migration file does not have file name")
    stem, dot, ext = base.rpartition(".")
    if not dot:
        raise MigrationError("migration file does not have an extension")
    if ext.lower() != "sql":
        raise MigrationError("migration file does not have sql extension")
    version, sep, name = stem.partition("_")
    if not sep:
        raise MigrationError("migration file has invalid name")
    if not (version.isascii() and version.isdigit()):
        raise MigrationError(f"failed to parse migration version: {version}")
    return int(version), name


def parse_migration_text(sql_text: str) -> List[MigrationStatement]:
    """Split migration SQL into statements.

    Lines are trimmed and joined without separator until one ends with
    ``;``. A ``--`` comment line is a statement of its own unless it
    appears inside a statement being built.
    """
    output = []
    acc = None
    for raw in sql_text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("--") and acc is None:
            output.append(MigrationStatement(line))
            continue
        acc = line if acc is None else acc + line
        if not line.endswith(";"):
            continue
        output.append(MigrationStatement(acc))
        acc = None
    return output


def extract_up_down_ranges(
    statements: Sequence[MigrationStatement],
) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    up_start = 0
    down_start = 0
    for idx, statement in enumerate(statements):
        if not statement.is_line_comment():
            continue
        if statement.text.startswith(PICO_UP):
            up_start = idx
        if statement.text.startswith(PICO_DOWN):
            down_start = idx
    return (up_start, down_start), (down_start, len(statements))


def parse_migration_file(path: Union[str, Path]) -> Migration:
    path = Path(path)
    version, name = parse_migration_file_name(path)
    try:
        text = read_text(path)
    except FilesystemError as e:
        raise MigrationError(f"failed to read migration file {path}: {e.message}") from e
    statements = parse_migration_text(text)
    up_range, down_range = extract_up_down_ranges(statements)
    return Migration(version, name, statements, up_range, down_range)


def parse_migrations(migrations_dir: Union[str, Path]) -> List[Migration]:
    """Parse every migration file of a directory, sorted by version."""
    path = Path(migrations_dir)
    try:
        entries = sorted(path.iterdir())
    except OSError as e:
        raise MigrationError("migration directory can not be read", {"path": str(path)}) from e
    return sort_migrations([parse_migration_file(entry) for entry in entries])


def find_migrations_directories(target_dir: Union[str, Path]) -> List[Tuple[str, Path]]:
    """Locate ``<plugin>/<latest version>/migrations`` under a build profile dir."""
    target_dir = Path(target_dir)
    try:
        plugin_dirs = sorted(
            entry for entry in target_dir.iterdir()
            if entry.is_dir() and entry.name not in SKIPPED_TARGET_DIRS
        )
    except OSError as e:
        raise MigrationError(
            "reading plugin target directory for migrations search",
            {"path": str(target_dir)},
        ) from e

    output = []
    for plugin_dir in plugin_dirs:
        try:
            versions = sorted(plugin_dir.iterdir(), key=lambda p: p.name)
        except OSError as e:
            raise MigrationError(
                f"searching plugin directory {plugin_dir} for migrations"
            ) from e
        if not versions:
            continue
        migrations_path = versions[-1] / "migrations"
        if migrations_path.exists():
            output.append((plugin_dir.name, migrations_path))
    return output


def make_ddl_tier_overrides(
    migrations: Sequence[Migration], target_tier: str
) -> List[MigrationContextVar]:
    """Point every tier variable used by ``migrations`` at ``target_tier``."""
    output = []
    for migration in migrations:
        for statement in migration.statements:
            for name in statement.extract_tier_variables():
                output.append(MigrationContextVar(name=name, value=target_tier))
    return output


def ddl_override_provider(target_dir: Union[str, Path], target_tier: str) -> PerPluginContextProvider:
    """Context provider redirecting DDL of every built plugin to ``target_tier``."""
    overrides: Dict[str, List[MigrationContextVar]] = {}
    target_dir = Path(target_dir)
    if not target_dir.is_dir():
        logger.debug("No build directory %s, no DDL tier overrides", target_dir)
        return PerPluginContextProvider(overrides)
    for plugin_name, migrations_dir in find_migrations_directories(target_dir):
        overrides[plugin_name] = make_ddl_tier_overrides(
            parse_migrations(migrations_dir), target_tier
        )
        logger.debug(
            "DDL tier overrides for %s: %s",
            plugin_name,
            [var.name for var in overrides[plugin_name]],
        )
    return PerPluginContextProvider(overrides)
