"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.error_recovery import health_checker
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, RequestLoggingMiddleware
from .engine import WorkflowEngine
from .executors import register_builtin_executors


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.engine: Optional[WorkflowEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def setup_health_checks(engine: WorkflowEngine, logger) -> None:
    """Register the component health checks of ``engine``."""
    health_checker.clear()

    def check_database():
        return engine.database.check_connection()

    def check_scheduler():
        scheduler_status = engine.scheduler.get_status()
        return {
            "message": "Scheduler operational",
            "running": scheduler_status["running"],
            "executors_in_flight": scheduler_status["executors_in_flight"],
            "max_concurrent_nodes": scheduler_status["max_concurrent_nodes"],
        }

    def check_executor_registry():
        return {"message": "Executor registry operational", "registered_executors": len(engine.executors.list_executors())}

    health_checker.register_check("database", check_database)
    health_checker.register_check("scheduler", check_scheduler)
    health_checker.register_check("executor_registry", check_executor_registry)
    logger.info("Health checks registered")


def create_lifespan_handler(config: AppConfig, engine: WorkflowEngine):
    """Create the lifespan handler that starts and stops the engine loops."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version} as {engine.engine_instance_id}")

        try:
            engine.start(background=config.autostart_scheduler)
            setup_health_checks(engine, logger)
            app_state.logger = logger
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")
        try:
            engine.shutdown()
        except Exception as e:
            logger.error(f"Error during graceful shutdown: {e}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, engine: Optional[WorkflowEngine] = None) -> FastAPI:
    """
    Create and configure a FastAPI application.

    Args:
        config: Configuration; loaded from the environment when omitted
        engine: Prebuilt engine (tests pass one bound to an in-memory database)

    Returns:
        The FastAPI application
    """
    if config is None:
        config = get_config()
    validate_config(config)

    if engine is None:
        engine = WorkflowEngine.from_config(config)
    register_builtin_executors(engine.executors)

    app_state.config = config
    app_state.engine = engine
    init_dependencies(engine)

    app = FastAPI(
        title=config.app_name,
        description="DAG workflow orchestration engine with retries, timeouts and crash recovery",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, engine)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Health of every registered component; 503 when any is unhealthy."""
        try:
            results = health_checker.run_all_checks()
            status_code = 200 if results["overall_status"] == "healthy" else 503
            return JSONResponse(
                status_code=status_code,
                content={"service": service, "version": config.app_version, **results}
            )
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=503,
                content={
                    "service": service,
                    "overall_status": "unhealthy",
                    "error": str(e),
                    "timestamp": datetime.utcnow().isoformat()
                }
            )
