"""Error hierarchy for the picotest cluster harness."""

from typing import Optional, Dict, Any


class PicotestError(Exception):
    """Base exception for all picotest errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration and Setup Errors
class ConfigurationError(PicotestError):
    """Error in harness configuration."""


# Filesystem and IO Errors
class FilesystemError(PicotestError):
    """Filesystem operation error."""


class PathError(FilesystemError):
    """Path resolution or validation error."""


class AtomicWriteError(FilesystemError):
    """Atomic write operation failed."""


# Data and Codec Errors
class CodecError(PicotestError):
    """Data encoding/decoding error."""


class SerializationError(CodecError):
    """Data serialization error."""


class DeserializationError(CodecError):
    """Data deserialization error."""


# Topology, migration and manifest errors
class TopologyError(PicotestError):
    """Topology file could not be read or is invalid."""


class MigrationError(TopologyError):
    """Plugin migration file could not be parsed."""


class ManifestError(TopologyError):
    """Plugin manifest could not be read, changed or restored."""


# Process Errors
class ProcessError(PicotestError):
    """Base class for process-related errors."""


class ProcessStartupError(ProcessError):
    """Error during process startup."""


# Cluster lifecycle errors
class SpawnError(PicotestError):
    """Cluster tool invocation failed for an instance."""

    def __init__(self, message: str, instance_index: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.instance_index = instance_index


class PortAllocationError(SpawnError):
    """No contiguous port block could be reserved."""


class ReadinessTimeout(PicotestError):
    """Instance did not answer its control surface before the shared deadline."""

    def __init__(self, message: str, instance_index: Optional[int] = None,
                 timeout: Optional[float] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.instance_index = instance_index
        self.timeout = timeout


class InstanceExitedError(ReadinessTimeout):
    """Instance process exited while it was being probed."""

    def __init__(self, message: str, instance_index: Optional[int] = None,
                 exit_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, instance_index=instance_index, details=details)
        self.exit_code = exit_code


class TeardownError(PicotestError):
    """Error while tearing an instance down. Logged, never raised to callers."""

    def __init__(self, message: str, instance_index: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.instance_index = instance_index


class OrchestratorError(PicotestError):
    """Cluster could not be brought up. Everything created was torn down."""

    def __init__(self, message: str, instance_index: Optional[int] = None,
                 cause: Optional[BaseException] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.instance_index = instance_index
        self.cause = cause


class InvalidClusterSpecError(OrchestratorError):
    """Cluster spec failed validation before anything was spawned."""


# Admin console errors
class AdminError(PicotestError):
    """Base class for admin console errors."""


class AdminUnreachableError(AdminError):
    """Admin console refused the connection or timed out."""


class AdminProtocolError(AdminError):
    """Admin console answered with something that is not a framed response."""


class QueryFailedError(AdminError):
    """Admin console reported a non-success status for the request."""


# RPC errors
class RpcError(PicotestError):
    """Base class for plugin RPC errors."""


class RpcUnreachableError(RpcError):
    """Binary protocol port could not be reached."""


class RpcCodecError(RpcError):
    """Request or response payload could not be converted."""


class RpcRemoteError(RpcError):
    """Endpoint returned an application-level error."""

    def __init__(self, message: str, code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details)
        self.code = code


# Config push errors
class ConfigError(PicotestError):
    """Plugin configuration could not be pushed to the cluster."""


class ConfigRejectedError(ConfigError):
    """Cluster rejected the configuration as malformed or for an unknown service."""


# Plugin unit tests
class UnitTestError(PicotestError):
    """Plugin unit test executed inside an instance did not succeed."""


class PluginProvisionError(PicotestError):
    """Plugin declared by the topology could not be installed or enabled."""
