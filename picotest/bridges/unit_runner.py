"""Runs plugin unit-test symbols inside an instance through Lua FFI."""

import sys
from pathlib import Path
from typing import Optional, Union

import yaml

from ..core.enums import ScriptDialect
from ..core.errors import AdminError, QueryFailedError, UnitTestError
from ..core.log import get_logger
from .admin import AdminBridge, AdminTarget

logger = get_logger(__name__)

PICODATA_CONFIG_FILE_NAME = "picodata.yaml"
LIB_EXTENSION = "dylib" if sys.platform == "darwin" else "so"

LUA_FFI_TEMPLATE = """\
"[*] Running unit-test '{name}'"
ffi = require("ffi")
ffi.cdef[[void {name}();]]
dylib = "{dylib}"
ffi.load(dylib).{name}()
"[*] Test '{name}' has been finished"
true"""


def lua_ffi_call_unit_test(test_fn_name: str, plugin_dylib_path: Union[str, Path]) -> str:
    """Lua script loading the plugin library and calling ``test_fn_name``."""
    if not test_fn_name.isidentifier():
        raise UnitTestError(f"Invalid unit-test symbol: {test_fn_name!r}")
    return LUA_FFI_TEMPLATE.format(name=test_fn_name, dylib=plugin_dylib_path)


def unit_test_failure(output: str) -> Optional[str]:
    """Failure reason visible in unit-test console output, or None."""
    if "cannot open shared object file" in output:
        return "failed to open plugin shared library"
    if "missing declaration" in output or "undefined symbol" in output:
        return "failed to call unit-test routine: missing symbol in plugin shared library"
    if "true" not in output:
        return "test has finished unexpectedly"
    return None


def verify_unit_test_output(output: str) -> None:
    reason = unit_test_failure(output)
    if reason is not None:
        raise UnitTestError(reason, {"output": output})


def plugin_dylib_path(plugin_root: Union[str, Path], profile: str = "debug") -> Path:
    """``target/<profile>/lib<cluster name>.<ext>`` as named by ``picodata.yaml``."""
    config_path = Path(plugin_root) / PICODATA_CONFIG_FILE_NAME
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except OSError as e:
        raise UnitTestError(f"Plugin picodata configuration is not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise UnitTestError(f"Plugin picodata configuration is not valid: {e}") from e
    try:
        cluster_name = config["cluster"]["name"]
    except (KeyError, TypeError) as e:
        raise UnitTestError(
            f"Plugin picodata configuration {config_path} has no cluster.name"
        ) from e
    library = f"lib{str(cluster_name).replace('-', '_')}.{LIB_EXTENSION}"
    return Path(plugin_root) / "target" / profile / library


class UnitTestRunner:
    """Executes unit-test symbols of a plugin library on one instance."""

    def __init__(self, bridge: AdminBridge, dylib_path: Union[str, Path]) -> None:
        self._bridge = bridge
        self._dylib_path = Path(dylib_path)

    def run(self, instance: AdminTarget, test_fn_name: str, timeout: Optional[float] = None) -> str:
        script = lua_ffi_call_unit_test(test_fn_name, self._dylib_path)
        logger.info("Running unit-test %s from %s", test_fn_name, self._dylib_path.name)
        try:
            output = self._bridge.run_script(instance, script, ScriptDialect.LUA, timeout=timeout)
        except QueryFailedError as e:
            reason = unit_test_failure(e.message) or e.message
            raise UnitTestError(
                f"Test '{test_fn_name}' exited with failure: {reason}", {"output": e.message}
            ) from e
        except AdminError as e:
            raise UnitTestError(f"Test '{test_fn_name}' could not run: {e.message}") from e
        verify_unit_test_output(output)
        return output
