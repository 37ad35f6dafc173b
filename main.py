from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from querylayer.config import Settings, settings as default_settings
from querylayer.database.manager import DatabaseManager
from querylayer.middleware.request_context import RequestContextMiddleware
from querylayer.logging.logger import LogConfig, get_logger
from querylayer.exceptions.handler import QueryLayerException, global_exception_handler
from querylayer.repository.registry import RepositoryRegistry
from demo.models import build_registry
from demo.blog.api.router import router as blog_router

logger = get_logger("main")


def create_app(registry: Optional[RepositoryRegistry] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application. With a registry (tests, embedders) its DatabaseManager is
    used as-is; otherwise the lifespan connects one from settings and owns it.
    """
    settings = settings or (registry.manager.settings if registry is not None else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if registry is not None:
            yield
            return

        LogConfig.setup_logging(settings)
        manager = DatabaseManager(settings)
        await manager.connect()
        if settings.APP_ENV == "development":
            await manager.sql.create_all()
        app.state.registry = build_registry(manager)
        logger.info(f"{settings.APP_NAME} started ({settings.APP_ENV})")
        try:
            yield
        finally:
            await manager.disconnect()

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if registry is not None:
        app.state.registry = registry

    # Register global exception handlers
    app.add_exception_handler(QueryLayerException, global_exception_handler)
    app.add_exception_handler(RequestValidationError, global_exception_handler)
    app.add_exception_handler(SQLAlchemyError, global_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(RequestContextMiddleware)

    # Mount routers (prefix from config for easy override)
    app.include_router(blog_router, prefix=settings.API_V1_BLOG_PREFIX, tags=["Blog"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
