"""Stock counts per product.

Every function works inside the caller's session and never commits; the
caller decides where the transaction ends.
"""

import logging

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from .exceptions import InsufficientStock, InventoryNotFound, StorageFailure
from .models import InventoryRecord

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _storage_failure(action: str, product_id: str, err: SQLAlchemyError) -> StorageFailure:
    logger.exception("Inventory %s failed for product %s", action, product_id)
    return StorageFailure(f"Could not {action} inventory for product {product_id}: {err}")


def get(db: Session, product_id: str) -> InventoryRecord | None:
    try:
        return db.get(InventoryRecord, product_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise _storage_failure("read", product_id, e) from e


def _write_row(db: Session, product_id: str, quantity: int, overwrite: bool) -> None:
    dialect_insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if dialect_insert is None:
        record = db.get(InventoryRecord, product_id, with_for_update=True)
        if record is None:
            db.add(InventoryRecord(product_id=product_id, quantity=quantity, reserved_quantity=0))
        elif overwrite:
            record.quantity = quantity
            record.updated_at = func.now()
        db.flush()
        return

    stmt = dialect_insert(InventoryRecord).values(
        product_id=product_id,
        quantity=quantity,
        reserved_quantity=0,
    )
    if overwrite:
        stmt = stmt.on_conflict_do_update(
            index_elements=[InventoryRecord.product_id],
            set_={"quantity": stmt.excluded.quantity, "updated_at": func.now()},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=[InventoryRecord.product_id])
    db.execute(stmt)


def upsert(db: Session, product_id: str, quantity: int) -> InventoryRecord:
    """Set the absolute quantity for a product, creating its row if needed."""
    try:
        _write_row(db, product_id, quantity, overwrite=True)
        record = db.get(InventoryRecord, product_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise _storage_failure("set", product_id, e) from e
    logger.info("Inventory set for product %s: quantity = %s", product_id, quantity)
    return record


def get_or_create(db: Session, product_id: str) -> InventoryRecord:
    """Return the product's row, creating it with zero stock on first sight."""
    record = get(db, product_id)
    if record is not None:
        return record
    try:
        _write_row(db, product_id, 0, overwrite=False)
        record = db.get(InventoryRecord, product_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise _storage_failure("initialize", product_id, e) from e
    logger.info("Initialized empty inventory for product %s", product_id)
    return record


def conditional_decrement(db: Session, product_id: str, amount: int) -> InventoryRecord:
    """Take ``amount`` units off the product in one guarded UPDATE.

    The row changes only if ``quantity - reserved_quantity >= amount`` holds
    when the statement runs. When no row matches, the row is re-read to tell
    an unknown product apart from a shortfall.
    """
    stmt = (
        update(InventoryRecord)
        .where(
            InventoryRecord.product_id == product_id,
            InventoryRecord.quantity - InventoryRecord.reserved_quantity >= amount,
        )
        .values(quantity=InventoryRecord.quantity - amount, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    try:
        changed = db.execute(stmt).rowcount
        current = None if changed else db.get(InventoryRecord, product_id, populate_existing=True)
    except SQLAlchemyError as e:
        raise _storage_failure("decrement", product_id, e) from e

    if not changed:
        if current is None:
            raise InventoryNotFound(product_id)
        logger.info(
            "Decrement of %s refused for product %s: %s available",
            amount,
            product_id,
            current.available_quantity,
        )
        raise InsufficientStock(product_id, requested=amount, available=current.available_quantity)

    record = get(db, product_id)
    logger.info("Inventory decremented for product %s: -%s", product_id, amount)
    return record

