"""Tests for plugin migration parsing and DDL tier overrides."""

import pytest

from picotest.core.errors import MigrationError
from picotest.topology.migration import (
    Migration,
    MigrationStatement,
    ddl_override_provider,
    extract_up_down_ranges,
    find_migrations_directories,
    make_ddl_tier_overrides,
    parse_migration_file,
    parse_migration_file_name,
    parse_migration_text,
    parse_migrations,
    sort_migrations,
)


def statements(*texts):
    return [MigrationStatement(text) for text in texts]


class TestMigrationFileName:
    """Test NNNN_name.sql file name parsing."""

    @pytest.mark.parametrize(
        "file_name,version,name",
        [
            ("0001_first.sql", 1, "first"),
            ("22_with_underscores.SQL", 22, "with_underscores"),
            ("/some/dir/0010_x.sql", 10, "x"),
        ],
    )
    def test_parse_ok(self, file_name, version, name) -> None:
        assert parse_migration_file_name(file_name) == (version, name)

    @pytest.mark.parametrize(
        "file_name,message",
        [
            ("..", "migration file does not have file name"),
            ("migration", "migration file does not have an extension"),
            ("m.EXE", "migration file does not have sql extension"),
            ("migration.sql", "migration file has invalid name"),
            ("ver_migr.sql", "failed to parse migration version: ver"),
        ],
    )
    def test_parse_invalid(self, file_name, message) -> None:
        with pytest.raises(MigrationError) as exc_info:
            parse_migration_file_name(file_name)
        assert str(exc_info.value) == message


class TestParseMigrationText:
    """Test splitting migration SQL into statements."""

    def test_single_line_statements(self) -> None:
        text = """
        -- pico.UP
        CREATE TABLE t (id INTEGER NOT NULL, PRIMARY KEY (id)) USING memtx DISTRIBUTED BY (id) IN TIER @_plugin_config.custom_tier;
        -- pico.DOWN
        DROP TABLE t;
        """
        parsed = parse_migration_text(text)
        assert len(parsed) == 4
        assert parsed[0].text == "-- pico.UP"
        assert parsed[0].is_line_comment()
        assert parsed[0].is_pico_up()
        assert parsed[1].text.startswith("CREATE TABLE t")
        assert parsed[1].text.endswith("custom_tier;")
        assert parsed[2].is_pico_down()
        assert parsed[3].text.startswith("DROP TABLE t")

    def test_multiline_statements_are_joined(self) -> None:
        text = """
        -- pico.UP
        CREATE TABLE t (
            id INTEGER NOT NULL,
            PRIMARY KEY (id)
        )
        USING memtx DISTRIBUTED by (id)
        in tier @_plugin_config.picotest_tier;
        CREATE TABLE a (
            id INTEGER
        )
        in TieR @_plugin_config.a_tier;

        -- pico.DOWN
        DROP TABLE t;

        DROP TABLE a;
        """
        parsed = parse_migration_text(text)
        assert len(parsed) == 6
        assert "\n" not in parsed[1].text
        assert parsed[1].text.endswith("in tier @_plugin_config.picotest_tier;")
        assert parsed[2].text.endswith("in TieR @_plugin_config.a_tier;")
        assert parsed[3].text == "-- pico.DOWN"
        assert parsed[4].text == "DROP TABLE t;"
        assert parsed[5].text == "DROP TABLE a;"

    def test_unterminated_statement_dropped(self) -> None:
        assert parse_migration_text("SELECT 1") == []


class TestTierVariables:
    """Test extraction of tier variables."""

    def test_extract_case_insensitive(self) -> None:
        statement = parse_migration_text("CREATE TABLE t() in Tier @_plugin_config.picotest_tier\n;")[0]
        assert statement.extract_tier_variables() == ["picotest_tier"]

    def test_extract_several(self) -> None:
        statement = MigrationStatement(
            "X IN TIER @_plugin_config.one; Y in tier @_plugin_config.Two"
        )
        assert statement.extract_tier_variables() == ["one", "Two"]

    def test_no_variables(self) -> None:
        assert MigrationStatement("CREATE TABLE t IN almost_pure_sql_tier;").extract_tier_variables() == []


class TestMigrationRanges:
    """Test up/down ranges and ordering."""

    def test_extract_up_down_range(self) -> None:
        parsed = statements(
            "-- pico.UP",
            "CREATE TABLE t IN almost_pure_sql_tier;",
            "CREATE TABLE u in somethingsomething;",
            "-- pico.DOWN",
            "DROP TABLE t;",
            "DROP TABLE d;",
        )
        up, down = extract_up_down_ranges(parsed)
        assert up == (0, 3)
        assert down == (3, 6)

    def test_up_and_down_statements(self) -> None:
        parsed = statements("-- pico.UP", "CREATE;", "-- pico.DOWN", "DROP;")
        up, down = extract_up_down_ranges(parsed)
        migration = Migration(1, "m", parsed, up, down)
        assert [s.text for s in migration.up_statements()] == ["-- pico.UP", "CREATE;"]
        assert [s.text for s in migration.down_statements()] == ["-- pico.DOWN", "DROP;"]

    def test_sort_by_version(self) -> None:
        migrations = sort_migrations(
            [Migration(2, "second"), Migration(22, "22"), Migration(1, "first"), Migration(0, "why_not")]
        )
        assert [m.name for m in migrations] == ["why_not", "first", "second", "22"]


class TestDdlTierOverrides:
    """Test redirecting DDL tiers for single node clusters."""

    def test_simple_override(self) -> None:
        migration = Migration(
            1,
            "first",
            statements(
                "-- pico.UP",
                "CREATE TABLE table IN TIER @_plugin_config.storage;",
                "-- pico.DOWN",
                "CREATE TABLE table IN TIER @_plugin_config.router;",
            ),
        )
        variables = make_ddl_tier_overrides([migration], "default")
        assert [(v.name, v.value) for v in variables] == [("storage", "default"), ("router", "default")]


class TestMigrationFiles:
    """Test reading migrations from a build directory."""

    def _build_tree(self, root):
        for version in ("0.1.0", "0.2.0"):
            migrations = root / "weather" / version / "migrations"
            migrations.mkdir(parents=True)
        latest = root / "weather" / "0.2.0" / "migrations"
        (latest / "0002_second.sql").write_text(
            "-- pico.UP\nCREATE TABLE b() IN TIER @_plugin_config.b_tier;\n", encoding="utf-8"
        )
        (latest / "0001_first.sql").write_text(
            "-- pico.UP\nCREATE TABLE a() IN TIER @_plugin_config.a_tier;\n-- pico.DOWN\nDROP TABLE a;\n",
            encoding="utf-8",
        )
        (root / "deps").mkdir()
        (root / "build").mkdir()
        return latest

    def test_parse_migration_file(self, temp_dir) -> None:
        latest = self._build_tree(temp_dir)
        migration = parse_migration_file(latest / "0001_first.sql")
        assert migration.version == 1
        assert migration.name == "first"
        assert migration.up_range == (0, 2)
        assert migration.down_range == (2, 4)

    def test_parse_missing_migration_file(self, temp_dir) -> None:
        with pytest.raises(MigrationError, match="0003_gone.sql"):
            parse_migration_file(temp_dir / "0003_gone.sql")

    def test_parse_undecodable_migration_file(self, temp_dir) -> None:
        path = temp_dir / "0004_binary.sql"
        path.write_bytes(b"\xff\xfe-- pico.UP\n")
        with pytest.raises(MigrationError, match="Encoding error"):
            parse_migration_file(path)

    def test_parse_migrations_sorted(self, temp_dir) -> None:
        latest = self._build_tree(temp_dir)
        assert [m.version for m in parse_migrations(latest)] == [1, 2]

    def test_parse_migrations_missing_dir(self, temp_dir) -> None:
        with pytest.raises(MigrationError):
            parse_migrations(temp_dir / "missing")

    def test_find_latest_version_directory(self, temp_dir) -> None:
        latest = self._build_tree(temp_dir)
        assert find_migrations_directories(temp_dir) == [("weather", latest)]

    def test_ddl_override_provider(self, temp_dir) -> None:
        self._build_tree(temp_dir)
        provider = ddl_override_provider(temp_dir, "default")
        names = [v.name for v in provider.get_migration_context("weather")]
        assert names == ["a_tier", "b_tier"]

    def test_ddl_override_provider_without_build_dir(self, temp_dir) -> None:
        provider = ddl_override_provider(temp_dir / "missing", "default")
        assert provider.get_migration_context("weather") == []
