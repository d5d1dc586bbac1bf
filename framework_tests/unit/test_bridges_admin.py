"""Tests for the admin console bridge against an in-process fake console."""

import re
import socket
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, List, Optional

import pytest

from picotest.bridges.admin import (
    AdminBridge,
    DocumentReader,
    RowSet,
    document_error,
    split_sql_statements,
    sql_to_lua_call,
)
from picotest.core.enums import ScriptDialect
from picotest.core.errors import (
    AdminProtocolError,
    AdminUnreachableError,
    QueryFailedError,
)
from picotest.core.types import TimeoutConfig

MARKER = re.compile(r"picotest-(?:begin|end)-[0-9a-f]+")


@dataclass
class Target:
    host: str
    ports: Any
    admin_socket: Optional[Path] = None
    name: str = "i1"


class FakeConsole:
    """Answers each console line with a YAML document, markers echoed back."""

    def __init__(self, responder: Callable[[str], str], unix_path: Optional[Path] = None,
                 chunk_size: int = 0, hang: bool = False, close_early: bool = False) -> None:
        self.responder = responder
        self.lines: List[str] = []
        self.chunk_size = chunk_size
        self.hang = hang
        self.close_early = close_early
        if unix_path is not None:
            self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self._server.bind(str(unix_path))
        else:
            self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._server.bind(("127.0.0.1", 0))
        self._server.listen(4)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def port(self) -> int:
        return self._server.getsockname()[1]

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._server.accept()
            except OSError:
                return
            with conn:
                self._handle(conn)

    def _handle(self, conn: socket.socket) -> None:
        conn.sendall(b"Connected to admin console\n")
        data = b""
        while b"picotest-end-" not in data or not data.endswith(b"\n"):
            chunk = conn.recv(4096)
            if not chunk:
                return
            data += chunk
        if self.close_early:
            return
        if self.hang:
            self._stop.wait(5.0)
            return
        reply = []
        for line in data.decode().splitlines():
            self.lines.append(line)
            if line.startswith("\\set"):
                reply.append("---\n- true\n...\n")
                continue
            marker = MARKER.search(line)
            if marker:
                reply.append(f"---\n- {marker.group(0)}\n...\n")
                continue
            reply.append(f"---\n{self.responder(line)}\n...\n")
        payload = "".join(reply).encode()
        if self.chunk_size:
            for i in range(0, len(payload), self.chunk_size):
                conn.sendall(payload[i:i + self.chunk_size])
        else:
            conn.sendall(payload)

    def close(self) -> None:
        self._stop.set()
        self._server.close()


@pytest.fixture
def bridge():
    return AdminBridge(TimeoutConfig(admin_request=2.0))


@pytest.fixture
def console_factory():
    consoles = []

    def factory(responder, **kwargs):
        console = FakeConsole(responder, **kwargs)
        consoles.append(console)
        return console

    yield factory
    for console in consoles:
        console.close()


def tcp_target(console: FakeConsole) -> Target:
    return Target("127.0.0.1", SimpleNamespace(admin=console.port))


ROWS_DOCUMENT = """\
- metadata:
  - {name: id, type: integer}
  - {name: city, type: string}
  rows:
  - [1, Moscow]
  - [2, Kazan]"""


class TestSqlToLuaCall:
    """Test SQL wrapping."""

    def test_strips_trailing_semicolon(self) -> None:
        assert sql_to_lua_call("SELECT * FROM cities;\n") == 'pico.sql("SELECT * FROM cities")'

    def test_keeps_newlines(self) -> None:
        text = "-- pick cities\nSELECT *\n  FROM cities;\n"
        assert sql_to_lua_call(text) == 'pico.sql("-- pick cities\\nSELECT *\\n  FROM cities")'

    def test_inline_comment_ends_at_line_break(self) -> None:
        call = sql_to_lua_call("SELECT a -- the a column\nFROM t WHERE b = 1")
        assert call == 'pico.sql("SELECT a -- the a column\\nFROM t WHERE b = 1")'
        assert "\n" not in call

    def test_escapes_quotes_and_backslashes(self) -> None:
        call = sql_to_lua_call('SELECT \'a\\b\', "c" FROM t WHERE s = \']==]\'')
        assert call == 'pico.sql("SELECT \'a\\\\b\', \\"c\\" FROM t WHERE s = \']==]\'")'

    def test_multiline_string_literal(self) -> None:
        call = sql_to_lua_call("INSERT INTO t VALUES ('one\r\ntwo')")
        assert call == 'pico.sql("INSERT INTO t VALUES (\'one\\r\\ntwo\')")'

    def test_empty_query(self) -> None:
        with pytest.raises(QueryFailedError):
            sql_to_lua_call(" \n;\n")


class TestSplitSqlStatements:
    """Test SQL script splitting."""

    def test_statement_spans_lines(self) -> None:
        assert split_sql_statements("SELECT 1\nFROM t;\nSELECT 2;") == ["SELECT 1\nFROM t", "SELECT 2"]

    def test_last_statement_without_semicolon(self) -> None:
        assert split_sql_statements("DELETE FROM t;\nDELETE FROM u") == ["DELETE FROM t", "DELETE FROM u"]

    def test_semicolon_in_literal_and_name(self) -> None:
        text = "INSERT INTO \"a;b\" VALUES ('x;y', 'it''s;');"
        assert split_sql_statements(text) == ["INSERT INTO \"a;b\" VALUES ('x;y', 'it''s;')"]

    def test_semicolon_in_comment(self) -> None:
        text = "SELECT a -- first; second\nFROM t;"
        assert split_sql_statements(text) == ["SELECT a -- first; second\nFROM t"]

    def test_comment_only_pieces_dropped(self) -> None:
        assert split_sql_statements("-- header\n;\n;  \nSELECT 1;\n-- footer\n") == ["SELECT 1"]


class TestDocumentReader:
    """Test console output framing."""

    def test_ignores_text_outside_documents(self) -> None:
        reader = DocumentReader()
        documents = reader.feed(b"greeting\n---\n- 1\n...\nprompt> \n")
        assert documents == ["- 1"]
        assert not reader.in_document

    def test_split_across_chunks(self) -> None:
        reader = DocumentReader()
        assert reader.feed(b"---\n- a") == []
        assert reader.in_document
        assert reader.feed(b"bc\n") == []
        assert reader.feed(b"..") == []
        assert reader.feed(b".\n---\n- 2\n...\n") == ["- abc", "- 2"]

    def test_multibyte_split(self) -> None:
        reader = DocumentReader()
        encoded = "---\n- Пермь\n...\n".encode()
        cut = encoded.index("м".encode()) + 1
        assert reader.feed(encoded[:cut]) == []
        assert reader.feed(encoded[cut:]) == ["- Пермь"]


class TestDocumentError:
    """Test error detection in decoded documents."""

    def test_error_mapping(self) -> None:
        assert document_error([{"error": "no such table"}]) == "no such table"

    def test_null_then_message(self) -> None:
        assert document_error([None, "sbroad: unknown column"]) == "sbroad: unknown column"

    def test_regular_values(self) -> None:
        assert document_error([{"rows": []}]) is None
        assert document_error([None]) is None
        assert document_error("text") is None


class TestRowSet:
    """Test query results."""

    def test_records_and_scalar(self) -> None:
        rows = RowSet(columns=["a", "b"], rows=[[1, 2]])
        assert rows.records() == [{"a": 1, "b": 2}]
        assert rows.row_count == 1
        with pytest.raises(ValueError):
            rows.scalar()
        assert RowSet(columns=["n"], rows=[[7]]).scalar() == 7


class TestAdminBridge:
    """Test requests through the fake console."""

    def test_run_query_rows(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: ROWS_DOCUMENT)
        rows = bridge.run_query(tcp_target(console), "SELECT id, city FROM cities")
        assert rows.columns == ["id", "city"]
        assert rows.rows == [[1, "Moscow"], [2, "Kazan"]]
        assert console.lines[0] == "\\set language lua"
        assert 'pico.sql("SELECT id, city FROM cities")' in console.lines

    def test_run_query_row_count(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- row_count: 3")
        rows = bridge.run_query(tcp_target(console), "DELETE FROM cities")
        assert rows.columns == []
        assert rows.row_count == 3

    def test_run_query_error(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- null\n- 'sbroad: table not found'")
        with pytest.raises(QueryFailedError) as exc_info:
            bridge.run_query(tcp_target(console), "SELECT * FROM nowhere")
        assert "table not found" in exc_info.value.message
        assert exc_info.value.details["query"] == "SELECT * FROM nowhere"

    def test_chunked_response(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: ROWS_DOCUMENT, chunk_size=7)
        assert len(bridge.run_query(tcp_target(console), "SELECT 1")) == 2

    def test_run_script_returns_bodies(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- 42" if "42" in line else "- ok")
        output = bridge.run_script(tcp_target(console), "x = 1\n\nreturn 42\n")
        assert output == "- ok\n- 42"

    def test_run_script_sql_dialect(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- row_count: 1")
        bridge.run_script(tcp_target(console), "INSERT INTO t VALUES (1);", dialect=ScriptDialect.SQL)
        assert console.lines[0] == "\\set language lua"
        assert 'pico.sql("INSERT INTO t VALUES (1)")' in console.lines

    def test_run_script_sql_multiline_statements(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- row_count: 1")
        script = (
            "CREATE TABLE t (id INT PRIMARY KEY, name TEXT)\n"
            "  DISTRIBUTED BY (id);\n"
            "-- seed rows\n"
            "INSERT INTO t\n"
            "VALUES (1, 'a;b');\n"
        )
        output = bridge.run_script(tcp_target(console), script, dialect=ScriptDialect.SQL)
        sent = [line for line in console.lines if line.startswith("pico.sql(")]
        assert sent == [
            'pico.sql("CREATE TABLE t (id INT PRIMARY KEY, name TEXT)\\n  DISTRIBUTED BY (id)")',
            'pico.sql("-- seed rows\\nINSERT INTO t\\nVALUES (1, \'a;b\')")',
        ]
        assert output == "- row_count: 1\n- row_count: 1"

    def test_run_script_sql_comments_only(self, bridge) -> None:
        target = Target("127.0.0.1", SimpleNamespace(admin=1))
        assert bridge.run_script(target, "-- nothing here;\n", dialect=ScriptDialect.SQL) == ""


    def test_run_script_error(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- error: 'attempt to call a nil value'")
        with pytest.raises(QueryFailedError):
            bridge.run_script(tcp_target(console), "nope()")

    def test_empty_script_skips_connection(self, bridge) -> None:
        assert bridge.run_script(Target("127.0.0.1", SimpleNamespace(admin=1)), "\n  \n") == ""

    def test_unix_socket(self, bridge, console_factory) -> None:
        directory = Path(tempfile.mkdtemp(prefix="pt"))
        path = directory / "admin.sock"
        console_factory(lambda line: "- row_count: 0", unix_path=path)
        target = Target("127.0.0.1", SimpleNamespace(admin=1), admin_socket=path)
        assert bridge.run_query(target, "DELETE FROM t").row_count == 0

    def test_connection_refused(self, bridge) -> None:
        probe = socket.socket()
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()
        with pytest.raises(AdminUnreachableError):
            bridge.run_query(Target("127.0.0.1", SimpleNamespace(admin=port)), "SELECT 1")

    def test_missing_socket_file(self, bridge, temp_dir) -> None:
        target = Target("127.0.0.1", SimpleNamespace(admin=1), admin_socket=temp_dir / "gone.sock")
        with pytest.raises(AdminUnreachableError):
            bridge.run_query(target, "SELECT 1")

    def test_timeout(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- 1", hang=True)
        with pytest.raises(AdminUnreachableError, match="timed out"):
            bridge.run_query(tcp_target(console), "SELECT 1", timeout=0.2)

    def test_closed_before_end(self, bridge, console_factory) -> None:
        console = console_factory(lambda line: "- 1", close_early=True)
        with pytest.raises(AdminProtocolError):
            bridge.run_query(tcp_target(console), "SELECT 1")
