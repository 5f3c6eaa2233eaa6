import threading
from collections.abc import Iterator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from inventory_service import inventory_ledger
from inventory_service.catalog_client import ProductInfo
from inventory_service.config import Settings
from inventory_service.coordinator import PurchaseCoordinator
from inventory_service.database import Database
from inventory_service.exceptions import ProductNotFound, ServiceUnavailable
from inventory_service.main import create_app

API_KEY = "test-key"


class FakeCatalog:
    """Stands in for RemoteCatalogClient without any HTTP."""

    def __init__(self, products: dict[str, Decimal] | None = None) -> None:
        self.products = dict(products or {})
        self.calls: list[str] = []
        self.unavailable = False
        self.barrier: threading.Barrier | None = None
        self.probe_result = "connected"
        self._lock = threading.Lock()

    def fetch_product(self, product_id: str, cancel_event: threading.Event | None = None) -> ProductInfo:
        with self._lock:
            self.calls.append(product_id)
        if self.barrier is not None:
            self.barrier.wait(timeout=10)
        if self.unavailable:
            raise ServiceUnavailable("Catalog service is temporarily unavailable. Please try again later.")
        if product_id not in self.products:
            raise ProductNotFound(product_id)
        return ProductInfo(
            id=product_id,
            price=self.products[product_id],
            attributes={"name": f"Product {product_id}", "price": str(self.products[product_id])},
        )

    def probe(self) -> str:
        return self.probe_result

    def close(self) -> None:
        pass


@pytest.fixture
def database(tmp_path) -> Iterator[Database]:
    db = Database(f"sqlite:///{tmp_path / 'inventory.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog({"widget": Decimal("25.00"), "gadget": Decimal("9.99")})


@pytest.fixture
def coordinator(database: Database, catalog: FakeCatalog) -> PurchaseCoordinator:
    return PurchaseCoordinator(database, catalog)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'inventory.db'}",
        API_KEY=API_KEY,
        PURCHASE_HISTORY_LIMIT=10,
    )


@pytest.fixture
def client(settings: Settings, database: Database, catalog: FakeCatalog) -> Iterator[TestClient]:
    app = create_app(settings, database=database, catalog=catalog)
    with TestClient(app) as test_client:
        test_client.headers.update({"X-API-Key": API_KEY})
        yield test_client


@pytest.fixture
def stock(database: Database):
    def _stock(product_id: str, quantity: int) -> None:
        with database.session() as db:
            inventory_ledger.upsert(db, product_id, quantity)
            db.commit()

    return _stock
