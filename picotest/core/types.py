"""Core type definitions for picotest."""

from typing import Dict, List, Optional, Any
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from .enums import ProbeKind

# service name -> opaque key/value configuration of that service
ConfigMap = Dict[str, Dict[str, Any]]


class ToolConfig(BaseModel):
    """External cluster tool invocation settings."""

    binary: str = "picodata"
    run_args: List[str] = Field(default_factory=lambda: ["run"])
    extra_args: List[str] = Field(default_factory=list)
    host: str = "127.0.0.1"
    build_profile: str = "debug"
    env_passthrough: List[str] = Field(
        default_factory=lambda: [
            "PATH",
            "TERM",
            "RUST_BACKTRACE",
            "PICODATA_LOG_LEVEL",
            "ASAN_OPTIONS",
            "LSAN_OPTIONS",
        ]
    )


class PortConfig(BaseModel):
    """Cross-process port block reservation settings."""

    base_port: int = 20000
    max_port: int = 30000
    lock_dir: Optional[Path] = None
    lock_timeout: float = 30.0


class TimeoutConfig(BaseModel):
    """Centralized timeout configuration to eliminate magical constants."""

    # Readiness
    readiness_default: float = 30.0
    readiness_poll_interval: float = 0.2
    probe_attempt: float = 2.0

    # Process management
    spawn_settle: float = 0.1
    process_graceful_stop: float = 3.0
    process_force_kill: float = 2.0

    # Bridges
    admin_request: float = 10.0
    rpc_request: float = 10.0

    # Plugin provisioning
    plugin_enable: float = 30.0


class ReadinessConfig(BaseModel):
    """How instances are probed for readiness."""

    probe: ProbeKind = ProbeKind.ADMIN
    probe_query: str = "SELECT 1"
    http_path: str = "/metrics"
    max_workers: int = 16


class PicotestConfig(BaseModel):
    """Main harness configuration."""

    log_level: str = "INFO"
    log_file: Optional[Path] = None
    work_dir: Optional[Path] = None
    keep_data: bool = False
    tool: ToolConfig = Field(default_factory=ToolConfig)
    ports: PortConfig = Field(default_factory=PortConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)


class ClusterSpec(BaseModel):
    """Immutable input of one orchestration call."""

    model_config = ConfigDict(frozen=True)

    topology_path: Path
    tiers: Optional[Dict[str, int]] = None
    config: Optional[ConfigMap] = None
    plugin_config_path: Optional[Path] = None
    timeout: float = 30.0
    env: Dict[str, str] = Field(default_factory=dict)
    single_node: bool = False
    install_plugins: bool = True
