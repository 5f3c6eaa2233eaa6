import logging
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import StorageFailure
from .models import PurchaseRecord, PurchaseStatusEnum

logger = logging.getLogger(__name__)


# Records are write-once: no update or delete.

def append(db: Session, product_id: str, quantity: int, total_price: Decimal) -> PurchaseRecord:
    record = PurchaseRecord(
        id=str(uuid.uuid4()),
        product_id=product_id,
        quantity=quantity,
        total_price=total_price,
        status=PurchaseStatusEnum.COMPLETED,
    )
    try:
        db.add(record)
        db.flush()
        db.refresh(record)
    except SQLAlchemyError as e:
        logger.exception("Failed to record purchase for product %s", product_id)
        raise StorageFailure(f"Could not record purchase for product {product_id}: {e}") from e
    logger.info("Purchase record created: %s", record.id)
    return record


def get_by_id(db: Session, purchase_id: str) -> PurchaseRecord | None:
    try:
        return db.get(PurchaseRecord, purchase_id)
    except SQLAlchemyError as e:
        logger.exception("Failed to read purchase %s", purchase_id)
        raise StorageFailure(f"Could not read purchase {purchase_id}: {e}") from e


def list_by_product(db: Session, product_id: str, limit: int = 10) -> list[PurchaseRecord]:
    stmt = (
        select(PurchaseRecord)
        .where(PurchaseRecord.product_id == product_id)
        .order_by(PurchaseRecord.purchase_date.desc())
        .limit(limit)
    )
    try:
        return list(db.scalars(stmt).all())
    except SQLAlchemyError as e:
        logger.exception("Failed to list purchases for product %s", product_id)
        raise StorageFailure(f"Could not list purchases for product {product_id}: {e}") from e
