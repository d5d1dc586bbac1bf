"""Plugin RPC client over the instance binary protocol.

A request is a call of ``.proc_rpc_dispatch`` with the endpoint path, the
msgpack-encoded request and a context naming the plugin, service and
version. The endpoint answers with msgpack bytes that are decoded into the
caller-chosen response type. Connections authenticate as the cluster's
service user.
"""

import asyncio
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Protocol

import tarantool
from tarantool.error import DatabaseError, NetworkError

from ..core.errors import (
    CodecError,
    RpcCodecError,
    RpcRemoteError,
    RpcUnreachableError,
)
from ..core.log import get_logger
from ..core.types import TimeoutConfig
from ..core.value_objects import InstancePorts
from ..utils.codec import convert, pack, unpack

logger = get_logger(__name__)

RPC_DISPATCH_FUNCTION = ".proc_rpc_dispatch"
SERVICE_USER = "pico_service"


class RpcTarget(Protocol):
    host: str
    ports: InstancePorts
    service_password: Optional[str]


def rpc_context(
    plugin_name: str, service_name: str, plugin_version: str, request_id: Optional[str] = None
) -> Dict[str, str]:
    return {
        "request_id": request_id or str(uuid.uuid4()),
        "plugin_name": plugin_name,
        "service_name": service_name,
        "plugin_version": plugin_version,
    }


class RpcClient:
    """Executes one plugin RPC per call on a fresh connection."""

    def __init__(self, timeouts: Optional[TimeoutConfig] = None, user: str = SERVICE_USER) -> None:
        self._timeouts = timeouts or TimeoutConfig()
        self._user = user

    async def execute_rpc(
        self,
        instance: RpcTarget,
        plugin_name: str,
        path: str,
        service_name: str,
        plugin_version: str,
        request: Any,
        response_type: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call ``path`` of ``service_name`` and decode the answer as ``response_type``.

        Raises:
            RpcUnreachableError: Connection failed, was closed or timed out
            RpcCodecError: Request or response could not be converted
            RpcRemoteError: The endpoint answered with an error
        """
        timeout = self._timeouts.rpc_request if timeout is None else timeout
        try:
            payload = pack(request)
        except CodecError as e:
            raise RpcCodecError(f"Cannot encode request for {path}: {e.message}") from e

        context = rpc_context(plugin_name, service_name, plugin_version)
        address = f"{instance.host}:{instance.ports.binary}"
        logger.debug("RPC %s %s/%s%s via %s", plugin_name, service_name, plugin_version, path, address)

        try:
            async with asyncio.timeout(timeout):
                data = await asyncio.to_thread(
                    self._call, instance, timeout, path, payload, context
                )
        except TimeoutError as e:
            raise RpcUnreachableError(f"RPC to {address} timed out after {timeout}s") from e
        except NetworkError as e:
            raise RpcUnreachableError(f"Cannot reach {address}: {e}") from e
        except DatabaseError as e:
            code = getattr(e, "code", None)
            message = getattr(e, "message", None) or str(e)
            raise RpcRemoteError(str(message), code=code, details={"path": path}) from e

        return self._decode_result(data, path, response_type)

    def execute_rpc_sync(self, instance: RpcTarget, *args: Any, **kwargs: Any) -> Any:
        """Blocking wrapper around ``execute_rpc`` for code outside an event loop."""
        return asyncio.run(self.execute_rpc(instance, *args, **kwargs))

    @contextmanager
    def connect(self, instance: RpcTarget, timeout: float) -> Iterator[tarantool.Connection]:
        conn = tarantool.Connection(
            instance.host,
            instance.ports.binary,
            user=self._user,
            password=getattr(instance, "service_password", None),
            socket_timeout=timeout,
            connection_timeout=timeout,
            connect_now=True,
            fetch_schema=False,
        )
        try:
            yield conn
        finally:
            conn.close()

    def _call(self, instance: RpcTarget, timeout: float, *args: Any) -> Any:
        with self.connect(instance, timeout) as conn:
            return conn.call(RPC_DISPATCH_FUNCTION, *args).data

    @staticmethod
    def _decode_result(data: Any, path: str, response_type: Optional[Any]) -> Any:
        if not isinstance(data, (list, tuple)) or not data:
            raise RpcCodecError(f"RPC {path} returned no data")
        raw = data[0]
        try:
            value = unpack(raw) if isinstance(raw, (bytes, bytearray)) else raw
            return convert(value, response_type)
        except CodecError as e:
            raise RpcCodecError(f"Cannot decode response of {path}: {e.message}") from e
