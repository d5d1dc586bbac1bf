"""Application context for explicit dependency management.

``ApplicationContext`` is the single immutable container for the harness
services. Components receive it explicitly instead of reaching for module
level singletons.

Usage:
    config = load_config(Path("picotest.yaml"))
    ctx = ApplicationContext.create(config)
    orchestrator = ClusterOrchestrator(ctx)

    # For testing
    ctx = ApplicationContext.for_testing(process_supervisor=Mock())
"""

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .log import Logger
from .process import ProcessSupervisor
from .types import PicotestConfig, PortConfig
from ..bridges.admin import AdminBridge
from ..bridges.rpc import RpcClient
from ..utils.filesystem import FilesystemService
from ..utils.ports import PortAllocator


@dataclass(frozen=True)
class ApplicationContext:
    """Immutable application-wide context containing all dependencies.

    Attributes:
        config: Harness configuration
        logger: Logging instance
        port_allocator: Cross-process port block reservation
        filesystem: Data directory layout
        process_supervisor: Process management service
        admin_bridge: Admin console client
        rpc_client: Plugin RPC client
    """

    config: PicotestConfig
    logger: Logger
    port_allocator: PortAllocator
    filesystem: FilesystemService
    process_supervisor: ProcessSupervisor
    admin_bridge: AdminBridge
    rpc_client: RpcClient

    @classmethod
    def create(
        cls,
        config: PicotestConfig,
        *,
        logger: Optional[Logger] = None,
        port_allocator: Optional[PortAllocator] = None,
        filesystem: Optional[FilesystemService] = None,
        process_supervisor: Optional[ProcessSupervisor] = None,
        admin_bridge: Optional[AdminBridge] = None,
        rpc_client: Optional[RpcClient] = None,
    ) -> "ApplicationContext":
        """Create application context with default implementations for anything not given."""
        # Import here to avoid circular dependencies at module level
        from .log import configure_logging, get_logger
        from ..utils.ports import FileLockPortAllocator

        if logger is None:
            configure_logging(level=config.log_level, log_file=config.log_file)
            logger = get_logger("picotest")

        if port_allocator is None:
            port_allocator = FileLockPortAllocator(config.ports, host=config.tool.host)

        return cls(
            config=config,
            logger=logger,
            port_allocator=port_allocator,
            filesystem=filesystem or FilesystemService(config),
            process_supervisor=process_supervisor or ProcessSupervisor(),
            admin_bridge=admin_bridge or AdminBridge(config.timeouts),
            rpc_client=rpc_client or RpcClient(config.timeouts),
        )

    @classmethod
    def for_testing(
        cls,
        config: Optional[PicotestConfig] = None,
        **overrides: Any,
    ) -> "ApplicationContext":
        """Context with an isolated port ledger and work directory.

        Example:
            >>> ctx = ApplicationContext.for_testing(logger=Mock(spec=Logger))
        """
        if config is None:
            scratch = Path(tempfile.mkdtemp(prefix="picotest-test-"))
            config = PicotestConfig(
                work_dir=scratch / "data",
                ports=PortConfig(lock_dir=scratch / "locks"),
            )
        if "logger" not in overrides:
            from .log import get_logger

            overrides["logger"] = get_logger("picotest.test")
        return cls.create(config, **overrides)
