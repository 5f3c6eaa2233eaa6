class InventoryServiceError(Exception):
    """Base for every error the inventory service reports to its callers.

    ``kind`` is stable and machine-readable, ``detail`` is for humans.
    """

    kind = "unexpected"
    title = "Internal Server Error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "title": self.title, "detail": self.detail}


class ValidationError(InventoryServiceError):
    kind = "validation"
    title = "Validation Error"


class ProductNotFound(InventoryServiceError):
    kind = "product_not_found"
    title = "Product Not Found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product with ID {product_id} was not found.")
        self.product_id = product_id


class InventoryNotFound(InventoryServiceError):
    kind = "inventory_not_found"
    title = "Inventory Not Found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"No inventory is recorded for product {product_id}.")
        self.product_id = product_id


class PurchaseNotFound(InventoryServiceError):
    kind = "purchase_not_found"
    title = "Purchase Not Found"

    def __init__(self, purchase_id: str) -> None:
        super().__init__(f"Purchase with ID {purchase_id} was not found.")
        self.purchase_id = purchase_id


class InsufficientStock(InventoryServiceError):
    kind = "insufficient_stock"
    title = "Insufficient Inventory"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Requested quantity {requested} exceeds available inventory "
            f"{available} for product {product_id}.",
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(requested=self.requested, available=self.available)
        return data


class ServiceUnavailable(InventoryServiceError):
    kind = "service_unavailable"
    title = "Service Unavailable"


class CatalogRequestCancelled(ServiceUnavailable):
    pass


class InvalidUpstreamResponse(InventoryServiceError):
    kind = "invalid_upstream_response"
    title = "External Service Error"


class StorageFailure(InventoryServiceError):
    kind = "storage_failure"
    title = "Storage Failure"


class UnexpectedError(InventoryServiceError):
    pass
