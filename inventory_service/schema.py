from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import PurchaseStatusEnum


# --- Request Schemas ---
class PurchaseCreate(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1)


class InventoryUpdate(BaseModel):
    quantity: int = Field(ge=0)


# --- Inventory Schemas ---
class Inventory(BaseModel):
    product_id: str
    quantity: int
    reserved_quantity: int
    available_quantity: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class Product(BaseModel):
    id: str
    price: float
    attributes: dict[str, Any] = {}

    class Config:
        from_attributes = True


class InventoryDetail(BaseModel):
    inventory: Inventory
    product: Product | None = None


# --- Purchase Schemas ---
class Purchase(BaseModel):
    id: str
    product_id: str
    quantity: int
    total_price: float
    purchase_date: datetime
    status: PurchaseStatusEnum

    class Config:
        from_attributes = True


class PurchaseReceipt(BaseModel):
    purchase: Purchase
    product: Product
    inventory: Inventory
    unit_price: float
    total_price: float
    remaining_available_quantity: int

    class Config:
        from_attributes = True


# --- Error Schemas ---
class ErrorObject(BaseModel):
    status: str
    kind: str
    title: str
    detail: str
    requested: int | None = None
    available: int | None = None


class ErrorResponse(BaseModel):
    errors: list[ErrorObject]
