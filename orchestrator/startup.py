"""Command line interface for running and administering the orchestrator."""

import argparse
import sys
from typing import List, Optional

from .config import (
    AppConfig,
    LogLevel,
    StorageBackend,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="workflow-orchestrator",
        description="Workflow Orchestrator - versioned workflow definitions, triggers and instance execution"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Storage configuration
    parser.add_argument(
        "--storage",
        choices=[backend.value for backend in StorageBackend],
        help="Persistence backend"
    )
    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Execution engine configuration
    parser.add_argument(
        "--max-concurrent-instances",
        type=int,
        help="Maximum number of instances advanced at the same time"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run the orchestrator API server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create the database tables")
    db_subparsers.add_parser("reset", help="Drop and recreate the database tables")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    subparsers.add_parser("templates", help="List the built-in workflow templates")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    # Command line arguments win over presets and the environment
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = True
    if args.storage:
        config.storage_backend = StorageBackend(args.storage)
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = True
    if args.max_concurrent_instances:
        config.max_concurrent_instances = args.max_concurrent_instances

    # Re-run field validators on the overridden values
    return AppConfig.model_validate(config.model_dump())


def run_server(config: AppConfig) -> None:
    """Run the orchestrator API server."""
    import uvicorn
    from .factory import create_app

    logger.info(f"Starting server on {config.host}:{config.port}")
    # Instances and timers live in this process, so a single worker is used
    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig) -> None:
    """Run database management commands."""
    from .storage import create_database_engine, create_tables, drop_tables

    engine = create_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )
    try:
        if command == "init":
            logger.info("Initializing database tables...")
            create_tables(engine)
            print(f"Database tables created at {config.database_url}")
        elif command == "reset":
            logger.info("Resetting database...")
            drop_tables(engine)
            create_tables(engine)
            print(f"Database reset completed at {config.database_url}")
    finally:
        engine.dispose()


def show_configuration(config: AppConfig) -> None:
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Storage Backend: {config.storage_backend.value}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Instances: {config.max_concurrent_instances}")
    print(f"  Max Queued Instances: {config.max_queued_instances}")
    print(f"  Max Parallel Branches: {config.max_parallel_branches}")
    print(f"  Default Step Timeout: {config.default_timeout}ms")
    print(f"  Tick Interval: {config.tick_interval}s")
    retention = f"{config.retention_days} days" if config.retention_days is not None else "disabled"
    print(f"  Instance Retention: {retention}")


def validate_configuration_command(config: AppConfig) -> None:
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def list_templates() -> None:
    from .templates import WorkflowTemplates

    for name, factory in WorkflowTemplates.all().items():
        definition = factory()
        print(f"  {name}: {definition.name} ({len(definition.steps)} steps)")


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the command line interface."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)

    if config.enable_logging:
        setup_logging(level=config.log_level.value, log_file=config.log_file,
                      log_format=config.log_format, structured=config.structured_logging)

    if args.command == "config":
        if args.config_command == "show":
            show_configuration(config)
        elif args.config_command == "validate":
            validate_configuration_command(config)
        else:
            print("Configuration command required. Use --help for options.")
            sys.exit(1)
        return

    if args.command == "templates":
        list_templates()
        return

    try:
        validate_config(config)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.command == "run" or args.command is None:
        run_server(config)
    elif args.command == "db":
        if not args.db_command:
            print("Database command required. Use --help for options.")
            sys.exit(1)
        run_database_command(args.db_command, config)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
