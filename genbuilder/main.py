import logging
import time
import uvicorn
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi import FastAPI
from sqlalchemy import text
from alembic.config import Config
from alembic import command
from genbuilder.core.config import settings
from genbuilder.core.logging import configure_logging, job_extra
from genbuilder.core.services import BuilderServices
from genbuilder.api.routes import router as api_router
from genbuilder.db.session import engine

configure_logging(settings.log_level)
log = logging.getLogger(__name__)
SERVICE = job_extra("-")

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


def wait_for_database(max_retries: int = 30, retry_delay: float = 1.0) -> None:
    """Wait for the job-record database to accept connections."""
    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            log.info("Database connection successful", extra=SERVICE)
            return
        except Exception as e:
            if attempt < max_retries - 1:
                log.warning("Database not ready, retrying in %s seconds (attempt %d/%d): %s",
                            retry_delay, attempt + 1, max_retries, e,
                            extra=SERVICE)
                time.sleep(retry_delay)
            else:
                log.error("Database connection failed after %d attempts", max_retries,
                          extra=SERVICE)
                raise


def run_migrations() -> None:
    """Run Alembic migrations to head."""
    try:
        log.info("Running database migrations...", extra=SERVICE)
        alembic_cfg = Config(str(ALEMBIC_INI))
        command.upgrade(alembic_cfg, "head")
        log.info("Database migrations completed successfully", extra=SERVICE)
    except Exception as e:
        log.error("Database migration failed: %s", e, exc_info=True, extra=SERVICE)
        raise


def create_app(services: BuilderServices | None = None, migrate: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        log.info("Starting API server...", extra=SERVICE)
        try:
            if migrate:
                wait_for_database()
                run_migrations()
            app.state.services = services or BuilderServices.build()
            await app.state.services.start()
            log.info("API server startup complete", extra=SERVICE)
        except Exception as e:
            log.error("API startup failed: %s", e, exc_info=True, extra=SERVICE)
            raise
        yield
        # Shutdown
        log.info("Shutting down API server...", extra=SERVICE)
        await app.state.services.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan
    )
    app.include_router(api_router, prefix="/v1")
    return app


app = create_app()


def run() -> None:
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)
