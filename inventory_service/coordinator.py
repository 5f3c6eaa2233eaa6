"""Purchase pipeline.

One purchase runs as:

    catalog lookup -> open transaction -> read stock -> guarded decrement
    -> append purchase record -> commit

The catalog is read before the local transaction opens and is never part of
it. Inside the transaction the conditional decrement is the only check that
counts; the earlier read just avoids a pointless write and gives a better
error. Anything that fails after the transaction opens is rolled back before
the error leaves this module.
"""

import enum
import logging
import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import inventory_ledger, purchase_ledger
from .catalog_client import ProductInfo, RemoteCatalogClient
from .database import Database
from .exceptions import InsufficientStock, StorageFailure, ValidationError
from .models import InventoryRecord, PurchaseRecord

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

PURCHASES_TOTAL = Counter(
    "inventory_service_purchases_total",
    "Purchase attempts by outcome",
    ["outcome"],
)
UNITS_SOLD_TOTAL = Counter(
    "inventory_service_units_sold_total",
    "Units sold through committed purchases",
)


class PurchaseState(str, enum.Enum):
    PENDING = "PENDING"
    CATALOG_RESOLVED = "CATALOG_RESOLVED"
    TRANSACTION_OPEN = "TRANSACTION_OPEN"
    STOCK_VERIFIED = "STOCK_VERIFIED"
    STOCK_DECREMENTED = "STOCK_DECREMENTED"
    RECORD_WRITTEN = "RECORD_WRITTEN"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class PurchaseResult:
    purchase: PurchaseRecord
    inventory: InventoryRecord
    product: ProductInfo
    unit_price: Decimal
    total_price: Decimal

    @property
    def remaining_available_quantity(self) -> int:
        return self.inventory.available_quantity


class _Attempt:
    """Tracks where a single purchase attempt is in the pipeline."""

    def __init__(self, product_id: str, quantity: int) -> None:
        self.product_id = product_id
        self.quantity = quantity
        self.state = PurchaseState.PENDING

    def advance(self, state: PurchaseState) -> None:
        logger.debug(
            "Purchase of %s x %s: %s -> %s",
            self.quantity,
            self.product_id,
            self.state.value,
            state.value,
        )
        self.state = state


def validate_request(product_id: str, quantity: int) -> None:
    if not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError("product_id must be a non-empty string.")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity must be a positive integer.")


def _rollback(db: Session, product_id: str) -> None:
    try:
        db.rollback()
    except SQLAlchemyError:
        logger.exception("Error rolling back transaction for product %s", product_id)


class PurchaseCoordinator:
    """Runs purchases against the injected store and catalog.

    Holds no per-purchase state, so one instance serves every request thread.
    """

    def __init__(self, database: Database, catalog: RemoteCatalogClient) -> None:
        self.database = database
        self.catalog = catalog

    def process_purchase(
        self,
        product_id: str,
        quantity: int,
        cancel_event: threading.Event | None = None,
    ) -> PurchaseResult:
        validate_request(product_id, quantity)
        attempt = _Attempt(product_id, quantity)
        logger.info("Processing purchase request: %s units of product %s", quantity, product_id)

        try:
            product = self.catalog.fetch_product(product_id, cancel_event=cancel_event)
        except Exception:
            attempt.advance(PurchaseState.ABORTED)
            PURCHASES_TOTAL.labels(outcome="catalog_failed").inc()
            raise
        attempt.advance(PurchaseState.CATALOG_RESOLVED)

        db = self.database.session()
        try:
            attempt.advance(PurchaseState.TRANSACTION_OPEN)
            result = self._run_transaction(db, attempt, product)
        except Exception as e:
            _rollback(db, product_id)
            attempt.advance(PurchaseState.ABORTED)
            outcome = "insufficient_stock" if isinstance(e, InsufficientStock) else "failed"
            PURCHASES_TOTAL.labels(outcome=outcome).inc()
            if isinstance(e, SQLAlchemyError):
                logger.exception("Storage error during purchase of product %s", product_id)
                raise StorageFailure(f"Purchase of product {product_id} could not be stored: {e}") from e
            raise
        finally:
            db.close()

        attempt.advance(PurchaseState.COMMITTED)
        PURCHASES_TOTAL.labels(outcome="completed").inc()
        UNITS_SOLD_TOTAL.inc(quantity)
        logger.info("Purchase completed successfully: %s", result.purchase.id)
        return result

    def _run_transaction(self, db: Session, attempt: _Attempt, product: ProductInfo) -> PurchaseResult:
        product_id, quantity = attempt.product_id, attempt.quantity

        # A missing row means the product was never stocked here.
        current = inventory_ledger.get(db, product_id)
        available = current.available_quantity if current is not None else 0
        if available < quantity:
            raise InsufficientStock(product_id, requested=quantity, available=available)
        attempt.advance(PurchaseState.STOCK_VERIFIED)

        inventory = inventory_ledger.conditional_decrement(db, product_id, quantity)
        attempt.advance(PurchaseState.STOCK_DECREMENTED)

        unit_price = product.price
        total_price = (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)
        purchase = purchase_ledger.append(db, product_id, quantity, total_price)
        attempt.advance(PurchaseState.RECORD_WRITTEN)

        db.commit()
        return PurchaseResult(
            purchase=purchase,
            inventory=inventory,
            product=product,
            unit_price=unit_price,
            total_price=total_price,
        )

    def set_inventory(self, product_id: str, quantity: int) -> InventoryRecord:
        """Administrative stock count, only for products the catalog knows."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError("quantity must be a non-negative integer.")
        self.catalog.fetch_product(product_id)

        db = self.database.session()
        try:
            record = inventory_ledger.upsert(db, product_id, quantity)
            db.commit()
        except Exception as e:
            _rollback(db, product_id)
            if isinstance(e, SQLAlchemyError):
                raise StorageFailure(f"Inventory for product {product_id} could not be stored: {e}") from e
            raise
        finally:
            db.close()
        return record
