import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from . import api
from .catalog_client import RemoteCatalogClient
from .config import Settings, get_settings
from .coordinator import PurchaseCoordinator
from .database import Database

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    catalog: RemoteCatalogClient | None = None,
) -> FastAPI:
    """Build the service; ``database`` and ``catalog`` may be injected (tests)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.info("Application starting up... Opening inventory store.")
        db = database or Database(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
        db.create_all()
        catalog_client = catalog or RemoteCatalogClient.from_settings(settings)

        app.state.settings = settings
        app.state.database = db
        app.state.catalog = catalog_client
        app.state.coordinator = PurchaseCoordinator(db, catalog_client)
        logging.info("Startup complete.")
        yield
        logging.info("Application shutting down...")
        if catalog is None:
            catalog_client.close()
        if database is None:
            db.dispose()

    app = FastAPI(
        title="Inventory Service",
        description="Manages product stock and processes purchases against the catalog service.",
        version=api.SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.include_router(api.monitoring_router)
    app.include_router(api.inventory_router)
    app.include_router(api.purchase_router)
    api.register_error_handlers(app)

    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)
    return app


app = create_app()
