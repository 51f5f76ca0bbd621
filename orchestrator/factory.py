"""Application factory: wires the orchestrator components and the FastAPI app."""

from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import AppConfig, StorageBackend, get_config, validate_config
from .core.actions import ActionDispatcher
from .core.execution_engine import ExecutionEngine
from .core.logging import setup_logging, get_logger
from .core.registry import WorkflowRegistry
from .core.scheduler import ClockTicker
from .core.triggers import TriggerDispatcher
from .storage import (
    InMemoryInstanceStore,
    InMemoryWorkflowStore,
    SqlInstanceStore,
    SqlWorkflowStore,
    create_database_engine,
    create_session_factory,
    create_tables,
)
from .api.endpoints import router, init_dependencies

logger = get_logger(__name__)


class ApplicationState:
    """Container for one independently wired set of orchestrator components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[WorkflowRegistry] = None
        self.action_dispatcher: Optional[ActionDispatcher] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_dispatcher: Optional[TriggerDispatcher] = None
        self.ticker: Optional[ClockTicker] = None
        self.database_engine = None

    def start(self) -> None:
        if self.ticker is not None:
            self.ticker.start()

    def shutdown(self) -> None:
        """Stop the clock, then drain the worker pools."""
        logger.info("Shutting down workflow orchestrator components")
        if self.ticker is not None:
            self.ticker.stop()
        if self.execution_engine is not None:
            self.execution_engine.shutdown()
        if self.action_dispatcher is not None:
            self.action_dispatcher.shutdown()
        if self.database_engine is not None:
            self.database_engine.dispose()


def build_components(config: Optional[AppConfig] = None,
                     action_dispatcher: Optional[ActionDispatcher] = None) -> ApplicationState:
    """
    Construct a registry, engine, trigger dispatcher and clock sharing one storage backend.

    Args:
        config: Configuration; loaded from the environment when omitted
        action_dispatcher: Pre-populated dispatcher; a fresh one when omitted

    Returns:
        ApplicationState holding the wired components (the clock is not started)
    """
    config = config or get_config()
    state = ApplicationState()
    state.config = config

    if config.storage_backend == StorageBackend.SQL:
        state.database_engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(state.database_engine)
        session_factory = create_session_factory(state.database_engine)
        workflow_store, instance_store = SqlWorkflowStore(session_factory), SqlInstanceStore(session_factory)
        logger.info(f"Using SQL storage at {config.database_url}")
    else:
        workflow_store, instance_store = InMemoryWorkflowStore(), InMemoryInstanceStore()
        logger.info("Using in-memory storage")

    state.registry = WorkflowRegistry(workflow_store, instance_store)
    state.action_dispatcher = action_dispatcher or ActionDispatcher(strict=config.strict_actions)
    state.execution_engine = ExecutionEngine(
        registry=state.registry,
        action_dispatcher=state.action_dispatcher,
        max_concurrent_instances=config.max_concurrent_instances,
        max_queued_instances=config.max_queued_instances,
        max_parallel_branches=config.max_parallel_branches,
        default_step_timeout=config.default_timeout,
    )
    state.trigger_dispatcher = TriggerDispatcher(state.registry, state.execution_engine)
    state.registry.bind_triggers(state.trigger_dispatcher)
    state.ticker = ClockTicker(
        state.execution_engine,
        state.trigger_dispatcher,
        state.registry,
        interval=config.tick_interval,
        cleanup_interval=config.cleanup_interval / 1000.0,
        retention_days=config.retention_days,
    )
    logger.info("Core components initialized")
    return state


def create_app(config: Optional[AppConfig] = None, state: Optional[ApplicationState] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    if config is None:
        config = state.config if state is not None and state.config is not None else get_config()

    validate_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if config.enable_logging:
            setup_logging(
                level=config.log_level.value,
                log_file=config.log_file,
                log_format=config.log_format,
                structured=config.structured_logging,
                max_size=config.log_max_size,
                backup_count=config.log_backup_count
            )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        components = state or build_components(config)
        app.state.components = components
        init_dependencies(
            registry=components.registry,
            execution_engine=components.execution_engine,
            trigger_dispatcher=components.trigger_dispatcher,
            action_dispatcher=components.action_dispatcher
        )
        components.start()
        logger.info("Application startup completed successfully")

        yield

        try:
            components.shutdown()
        except RuntimeError as e:
            logger.error(f"Error during graceful shutdown: {e}")

    app = FastAPI(
        title=config.app_name,
        description="Workflow orchestration engine: versioned definitions, triggers and instance execution",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["*"],
        )

    if config.enable_metrics:
        from .core.middleware import RequestTracingMiddleware

        app.add_middleware(RequestTracingMiddleware, slow_request_threshold=config.slow_request_threshold)

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check for container orchestration."""
        components = getattr(app.state, "components", None)
        ready = components is not None and components.ticker is not None and components.ticker.running
        return {
            "ready": ready,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
