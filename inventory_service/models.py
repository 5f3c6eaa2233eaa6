import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, Numeric, String
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.sql import func

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PurchaseStatusEnum(str, enum.Enum):
    COMPLETED = "completed"


class InventoryRecord(Base):
    __tablename__ = "inventory"

    product_id = Column(String(64), primary_key=True)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="check_quantity_nonnegative"),
        CheckConstraint("reserved_quantity >= 0", name="check_reserved_nonnegative"),
    )

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def __repr__(self):
        return (
            f"<InventoryRecord(product_id='{self.product_id}', quantity={self.quantity}, "
            f"reserved_quantity={self.reserved_quantity}, updated_at={self.updated_at})>"
        )


class PurchaseRecord(Base):
    __tablename__ = "purchase_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    purchase_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status = Column(
        SQLAlchemyEnum(PurchaseStatusEnum, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PurchaseStatusEnum.COMPLETED,
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_purchase_quantity_positive"),
        CheckConstraint("total_price >= 0", name="check_total_price_nonnegative"),
        Index("idx_purchase_product_date", "product_id", "purchase_date"),
    )

    def __repr__(self):
        return (
            f"<PurchaseRecord(id='{self.id}', product_id='{self.product_id}', "
            f"quantity={self.quantity}, total_price={self.total_price}, "
            f"status='{self.status}', purchase_date={self.purchase_date})>"
        )
