"""Admin console bridge: SQL queries and Lua scripts over the text console.

The console answers every input line with a YAML document framed by ``---``
and ``...``. A request is bracketed by two marker expressions whose answers
echo unique strings; the documents between the two echoes are the answer to
the request. Every call uses a fresh connection.
"""

import codecs
import socket
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import yaml

from ..core.enums import ScriptDialect
from ..core.errors import AdminProtocolError, AdminUnreachableError, QueryFailedError
from ..core.log import get_logger
from ..core.types import TimeoutConfig
from ..core.value_objects import InstancePorts

logger = get_logger(__name__)

DOCUMENT_START = "---"
DOCUMENT_END = "..."
RECV_SIZE = 65536
LUA_ESCAPES = str.maketrans({"\\": "\\\\", '"': '\\"', "\n": "\\n", "\r": "\\r"})


class AdminTarget(Protocol):
    """Anything that knows where an instance's admin console listens."""

    host: str
    ports: InstancePorts
    admin_socket: Any


@dataclass
class RowSet:
    """Rows returned by an SQL query with named columns."""

    columns: List[str] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)
    row_count: Optional[int] = None

    def __post_init__(self) -> None:
        if self.row_count is None:
            self.row_count = len(self.rows)

    def records(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]

    def scalar(self) -> Any:
        """The single value of a one-row, one-column result."""
        if len(self.rows) != 1 or len(self.rows[0]) != 1:
            raise ValueError(f"Expected a single value, got {len(self.rows)} rows")
        return self.rows[0][0]

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)


def sql_to_lua_call(text: str) -> str:
    """Wrap SQL into a one-line ``pico.sql`` call with the query's newlines escaped."""
    statement = text.strip().rstrip(";").rstrip()
    if not statement:
        raise QueryFailedError("Empty query")
    return f'pico.sql("{statement.translate(LUA_ESCAPES)}")'


def split_sql_statements(text: str) -> List[str]:
    """Split SQL text at ``;`` outside string literals, quoted names and ``--`` comments.

    Statements keep their inner line breaks. Pieces holding nothing but
    comments and whitespace are dropped.
    """
    statements: List[str] = []
    current: List[str] = []
    has_code = False
    quote: Optional[str] = None
    in_comment = False
    for index, char in enumerate(text):
        if in_comment:
            in_comment = char != "\n"
        elif quote is not None:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
            has_code = True
        elif char == "-" and text.startswith("--", index):
            in_comment = True
        elif char == ";":
            if has_code:
                statements.append("".join(current).strip())
            current, has_code = [], False
            continue
        elif not char.isspace():
            has_code = True
        current.append(char)
    if has_code:
        statements.append("".join(current).strip())
    return statements


def _marker_line(marker: str) -> str:
    return f'"{marker}"'


class DocumentReader:
    """Incrementally cuts console output into document bodies.

    Lines outside of a document (greeting, prompts) are ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._current: Optional[List[str]] = None

    def feed(self, data: bytes) -> List[str]:
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        documents = []
        for line in lines:
            line = line.rstrip("\r")
            if self._current is None:
                if line.startswith(DOCUMENT_START):
                    self._current = []
                    rest = line[len(DOCUMENT_START):].strip()
                    if rest:
                        self._current.append(rest)
                continue
            if line == DOCUMENT_END:
                documents.append("\n".join(self._current))
                self._current = None
                continue
            self._current.append(line)
        return documents

    @property
    def in_document(self) -> bool:
        return self._current is not None


def decode_document(body: str) -> Any:
    try:
        return yaml.safe_load(body) if body.strip() else None
    except yaml.YAMLError as e:
        raise AdminProtocolError(f"Undecodable console document: {e}", {"document": body}) from e


def document_error(value: Any) -> Optional[str]:
    """Error message carried by a decoded console document, if any."""
    if isinstance(value, list) and value:
        head = value[0]
        if isinstance(head, dict) and set(head) == {"error"}:
            return str(head["error"])
        if head is None and len(value) > 1 and isinstance(value[1], str):
            return value[1]
    return None


class AdminBridge:
    """Runs requests against an instance admin console."""

    def __init__(self, timeouts: Optional[TimeoutConfig] = None) -> None:
        self._timeouts = timeouts or TimeoutConfig()

    def run_query(self, instance: AdminTarget, text: str, timeout: Optional[float] = None) -> "RowSet":
        """Execute one SQL statement and return its rows."""
        documents = self.execute(instance, [sql_to_lua_call(text)], timeout)
        if not documents:
            raise AdminProtocolError("Console returned no result for query")
        value = decode_document(documents[0])
        message = document_error(value)
        if message is not None:
            raise QueryFailedError(message, {"query": text})
        return self._to_rowset(value)

    def run_script(
        self,
        instance: AdminTarget,
        text: str,
        dialect: ScriptDialect = ScriptDialect.LUA,
        timeout: Optional[float] = None,
    ) -> str:
        """Execute a script and return its output without console framing.

        SQL scripts run statement by statement through ``pico.sql``, so a
        statement may span several lines.
        """
        if dialect == ScriptDialect.SQL:
            lines = [sql_to_lua_call(statement) for statement in split_sql_statements(text)]
        else:
            lines = [line for line in text.splitlines() if line.strip()]
        if not lines:
            return ""
        documents = self.execute(instance, lines, timeout)
        for body in documents:
            message = document_error(decode_document(body))
            if message is not None:
                raise QueryFailedError(message, {"script": text})
        return "\n".join(body for body in documents if body.strip())

    def execute(
        self,
        instance: AdminTarget,
        lines: List[str],
        timeout: Optional[float] = None,
    ) -> List[str]:
        """Send Lua ``lines`` and return the bodies of the documents they produced."""
        timeout = self._timeouts.admin_request if timeout is None else timeout
        token = uuid.uuid4().hex
        begin, end = f"picotest-begin-{token}", f"picotest-end-{token}"
        payload = [
            f"\\set language {ScriptDialect.LUA.value}",
            _marker_line(begin),
            *lines,
            _marker_line(end),
        ]
        with self._connect(instance, timeout) as sock:
            try:
                sock.sendall(("\n".join(payload) + "\n").encode("utf-8"))
                documents = self._read_until(sock, end)
            except socket.timeout as e:
                raise AdminUnreachableError(
                    f"Admin console of {_describe(instance)} timed out after {timeout}s"
                ) from e
            except OSError as e:
                raise AdminUnreachableError(
                    f"Admin console of {_describe(instance)} failed: {e}"
                ) from e

        start = next((i for i, body in enumerate(documents) if begin in body), None)
        if start is None:
            raise AdminProtocolError("Console never echoed the request start marker")
        return documents[start + 1:-1]

    def _connect(self, instance: AdminTarget, timeout: float) -> socket.socket:
        admin_socket = getattr(instance, "admin_socket", None)
        try:
            if admin_socket is not None:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(timeout)
                try:
                    sock.connect(str(admin_socket))
                except OSError:
                    sock.close()
                    raise
                return sock
            return socket.create_connection((instance.host, instance.ports.admin), timeout=timeout)
        except socket.timeout as e:
            raise AdminUnreachableError(
                f"Timed out connecting to admin console of {_describe(instance)}"
            ) from e
        except OSError as e:
            raise AdminUnreachableError(
                f"Cannot connect to admin console of {_describe(instance)}: {e}"
            ) from e

    @staticmethod
    def _read_until(sock: socket.socket, marker: str) -> List[str]:
        """Documents up to and including the one echoing ``marker``."""
        reader = DocumentReader()
        documents: List[str] = []
        while True:
            chunk = sock.recv(RECV_SIZE)
            if not chunk:
                raise AdminProtocolError(
                    "Admin console closed the connection before the end of the response",
                    {"received": len(documents), "in_document": reader.in_document},
                )
            for body in reader.feed(chunk):
                documents.append(body)
                if marker in body:
                    return documents

    @staticmethod
    def _to_rowset(value: Any) -> RowSet:
        result = value[0] if isinstance(value, list) and value else value
        if not isinstance(result, dict):
            raise AdminProtocolError(f"Unexpected query result: {value!r}")
        if "rows" in result:
            columns = [
                column["name"] if isinstance(column, dict) else str(column)
                for column in result.get("metadata") or []
            ]
            return RowSet(columns=columns, rows=list(result["rows"] or []))
        if "row_count" in result:
            return RowSet(row_count=int(result["row_count"]))
        raise AdminProtocolError(f"Unexpected query result: {value!r}")


def _describe(instance: AdminTarget) -> str:
    admin_socket = getattr(instance, "admin_socket", None)
    if admin_socket is not None:
        return f"{getattr(instance, 'name', '?')} ({admin_socket})"
    return f"{getattr(instance, 'name', '?')} ({instance.host}:{instance.ports.admin})"
