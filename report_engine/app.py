"""FastAPI application entry point for the report engine."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from report_engine import __version__
from report_engine.core.router import register_routes
from report_engine.core.database import init_db
from report_engine.logging.config import configure_logging
from report_engine.logging.exception_handlers import register_exception_handlers
from report_engine.schema.bootstrap import get_registry


def create_app() -> FastAPI:

    configure_logging()

    app = FastAPI(
        title="Fleet Report Engine",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    init_db()

    # Tables are registered once at start-up, never lazily per request
    get_registry()

    register_exception_handlers(app)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, replace with specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__}

    return app
