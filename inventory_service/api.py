import logging
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import inventory_ledger, purchase_ledger, schema
from .auth import require_api_key
from .catalog_client import RemoteCatalogClient
from .coordinator import PurchaseCoordinator
from .database import Database, get_database, get_db
from .exceptions import InventoryServiceError, PurchaseNotFound, StorageFailure

logger = logging.getLogger(__name__)

SERVICE_NAME = "inventory-service"
SERVICE_VERSION = "1.0.0"

STATUS_BY_KIND = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "product_not_found": status.HTTP_404_NOT_FOUND,
    "inventory_not_found": status.HTTP_404_NOT_FOUND,
    "purchase_not_found": status.HTTP_404_NOT_FOUND,
    "insufficient_stock": status.HTTP_409_CONFLICT,
    "invalid_upstream_response": status.HTTP_502_BAD_GATEWAY,
    "service_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "storage_failure": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "unexpected": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_coordinator(request: Request) -> PurchaseCoordinator:
    return request.app.state.coordinator


def get_catalog(request: Request) -> RemoteCatalogClient:
    return request.app.state.catalog


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Commit failed")
        raise StorageFailure(f"Could not persist changes: {e}") from e


inventory_router = APIRouter(
    prefix="/api/inventory",
    tags=["Inventory"],
    dependencies=[Depends(require_api_key)],
)


@inventory_router.get("/{product_id}", response_model=schema.InventoryDetail)
def retrieve_inventory(
    product_id: str,
    db: Annotated[Session, Depends(get_db)],
    catalog: Annotated[RemoteCatalogClient, Depends(get_catalog)],
) -> schema.InventoryDetail:
    record = inventory_ledger.get_or_create(db, product_id)
    _commit(db)

    product = None
    try:
        product = catalog.fetch_product(product_id)
    except InventoryServiceError as e:
        logger.warning("Could not fetch product info for %s: %s", product_id, e.detail)

    logger.info("Inventory retrieved for product: %s", product_id)
    return schema.InventoryDetail(
        inventory=schema.Inventory.model_validate(record),
        product=schema.Product.model_validate(product) if product else None,
    )


@inventory_router.put("/{product_id}", response_model=schema.Inventory)
def update_inventory(
    product_id: str,
    inventory_update: schema.InventoryUpdate,
    coordinator: Annotated[PurchaseCoordinator, Depends(get_coordinator)],
) -> schema.Inventory:
    record = coordinator.set_inventory(product_id, inventory_update.quantity)
    return schema.Inventory.model_validate(record)


purchase_router = APIRouter(
    prefix="/api/purchase",
    tags=["Purchases"],
    dependencies=[Depends(require_api_key)],
)


@purchase_router.post("", response_model=schema.PurchaseReceipt, status_code=status.HTTP_201_CREATED)
def create_purchase(
    purchase_create: schema.PurchaseCreate,
    coordinator: Annotated[PurchaseCoordinator, Depends(get_coordinator)],
) -> schema.PurchaseReceipt:
    result = coordinator.process_purchase(purchase_create.product_id, purchase_create.quantity)
    return schema.PurchaseReceipt.model_validate(result)


@purchase_router.get("", response_model=list[schema.Purchase])
def retrieve_purchases_by_product(
    request: Request,
    product_id: str,
    db: Annotated[Session, Depends(get_db)],
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
) -> list[schema.Purchase]:
    if limit is None:
        limit = request.app.state.settings.PURCHASE_HISTORY_LIMIT
    records = purchase_ledger.list_by_product(db, product_id, limit=limit)
    return [schema.Purchase.model_validate(r) for r in records]


@purchase_router.get("/{purchase_id}", response_model=schema.Purchase)
def retrieve_purchase(purchase_id: str, db: Annotated[Session, Depends(get_db)]) -> schema.Purchase:
    record = purchase_ledger.get_by_id(db, purchase_id)
    if record is None:
        raise PurchaseNotFound(purchase_id)
    logger.info("Purchase retrieved: %s", record.id)
    return schema.Purchase.model_validate(record)


monitoring_router = APIRouter(tags=["Monitoring"])


@monitoring_router.get("/")
def service_info() -> dict:
    return {
        "name": "Inventory Service",
        "id": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": "Microservice for managing inventory and purchases",
        "endpoints": [
            "GET /health - Health check",
            "GET /metrics - Prometheus metrics",
            "GET /api/inventory/{product_id} - Get inventory for product",
            "PUT /api/inventory/{product_id} - Update inventory quantity",
            "POST /api/purchase - Process a purchase",
            "GET /api/purchase/{purchase_id} - Get a purchase",
            "GET /api/purchase?product_id= - Purchase history for a product",
        ],
    }


@monitoring_router.get("/health")
def health_check(
    database: Annotated[Database, Depends(get_database)],
    catalog: Annotated[RemoteCatalogClient, Depends(get_catalog)],
) -> JSONResponse:
    health = {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
    }
    try:
        database.ping()
    except SQLAlchemyError as e:
        logger.exception("Health check failed: Database connection error")
        health.update(status="error", database="disconnected", error=str(e))
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health)

    health["database"] = "connected"
    health["catalog_service"] = catalog.probe()
    if health["catalog_service"] == "disconnected":
        health["status"] = "degraded"
    return JSONResponse(content=health)


def _error_response(status_code: int, error: dict) -> JSONResponse:
    body = {"status": str(status_code), **error}
    return JSONResponse(status_code=status_code, content={"errors": [body]})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(InventoryServiceError)
    async def handle_service_error(request: Request, exc: InventoryServiceError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return _error_response(status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            {"kind": "validation", "title": "Validation Error", "detail": detail},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(
            exc.status_code,
            {"kind": "http_error", "title": HTTPStatus(exc.status_code).phrase, "detail": str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            {
                "kind": "unexpected",
                "title": "Internal Server Error",
                "detail": "An unexpected error occurred. Please try again later.",
            },
        )
