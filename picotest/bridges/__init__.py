"""Protocol bridges to a running instance: admin console, RPC and config push."""

from .admin import AdminBridge, RowSet
from .config_applier import ConfigApplier
from .rpc import RpcClient
from .unit_runner import UnitTestRunner

__all__ = ["AdminBridge", "RowSet", "ConfigApplier", "RpcClient", "UnitTestRunner"]
