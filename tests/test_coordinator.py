import logging
import threading
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from inventory_service import coordinator as coordinator_module
from inventory_service import inventory_ledger, purchase_ledger
from inventory_service.catalog_client import RemoteCatalogClient
from inventory_service.coordinator import PurchaseCoordinator
from inventory_service.exceptions import (
    CatalogRequestCancelled,
    InsufficientStock,
    ProductNotFound,
    ServiceUnavailable,
    StorageFailure,
    ValidationError,
)
from inventory_service.models import InventoryRecord, PurchaseRecord, PurchaseStatusEnum


def quantity_of(database, product_id):
    with database.session() as db:
        record = inventory_ledger.get(db, product_id)
        return None if record is None else record.quantity


def purchase_count(database, product_id=None):
    stmt = select(func.count()).select_from(PurchaseRecord)
    if product_id is not None:
        stmt = stmt.where(PurchaseRecord.product_id == product_id)
    with database.session() as db:
        return db.scalar(stmt)


def test_purchase_success(coordinator, database, stock):
    stock("widget", 10)

    result = coordinator.process_purchase("widget", 3)

    assert result.unit_price == Decimal("25.00")
    assert result.total_price == Decimal("75.00")
    assert result.remaining_available_quantity == 7
    assert result.inventory.quantity == 7
    assert result.purchase.status == PurchaseStatusEnum.COMPLETED
    assert result.purchase.quantity == 3
    assert result.purchase.total_price == Decimal("75.00")
    assert quantity_of(database, "widget") == 7
    assert purchase_count(database, "widget") == 1


def test_total_price_is_rounded_to_cents_as_stored(coordinator, catalog, database, stock):
    catalog.products["token"] = Decimal("0.333")
    stock("token", 5)

    result = coordinator.process_purchase("token", 3)

    assert result.unit_price == Decimal("0.333")
    assert result.total_price == Decimal("1.00")
    assert result.purchase.total_price == result.total_price
    with database.session() as db:
        stored = purchase_ledger.get_by_id(db, result.purchase.id)
        assert stored.total_price == result.total_price


def test_unknown_product_touches_nothing(coordinator, database, monkeypatch):
    opened = []
    monkeypatch.setattr(database, "session", lambda: opened.append(True))

    with pytest.raises(ProductNotFound):
        coordinator.process_purchase("ghost", 1)

    assert opened == []
    monkeypatch.undo()
    assert quantity_of(database, "ghost") is None
    assert purchase_count(database) == 0


def test_catalog_outage_leaves_store_untouched(coordinator, catalog, database, stock):
    stock("widget", 10)
    catalog.unavailable = True

    with pytest.raises(ServiceUnavailable):
        coordinator.process_purchase("widget", 1)

    assert quantity_of(database, "widget") == 10
    assert purchase_count(database) == 0


def test_insufficient_stock_reports_available(coordinator, database, stock):
    stock("widget", 2)

    with pytest.raises(InsufficientStock) as excinfo:
        coordinator.process_purchase("widget", 5)

    assert excinfo.value.requested == 5
    assert excinfo.value.available == 2
    assert quantity_of(database, "widget") == 2
    assert purchase_count(database) == 0


def test_missing_inventory_row_counts_as_zero_stock(coordinator, database):
    with pytest.raises(InsufficientStock) as excinfo:
        coordinator.process_purchase("gadget", 1)

    assert excinfo.value.available == 0
    assert quantity_of(database, "gadget") is None
    assert purchase_count(database) == 0


def test_lost_race_at_decrement_is_insufficient_stock(coordinator, database, stock, monkeypatch):
    stock("widget", 2)
    # the advisory read sees plenty; the guarded update must still refuse
    monkeypatch.setattr(
        coordinator_module.inventory_ledger,
        "get",
        lambda db, product_id: SimpleNamespace(available_quantity=100),
    )

    with pytest.raises(InsufficientStock) as excinfo:
        coordinator.process_purchase("widget", 5)

    monkeypatch.undo()
    assert excinfo.value.available == 2
    assert quantity_of(database, "widget") == 2
    assert purchase_count(database) == 0


def test_failed_record_write_rolls_back_decrement(coordinator, database, stock, monkeypatch):
    stock("widget", 10)

    def broken_append(*args, **kwargs):
        raise StorageFailure("disk full")

    monkeypatch.setattr(coordinator_module.purchase_ledger, "append", broken_append)

    with pytest.raises(StorageFailure):
        coordinator.process_purchase("widget", 4)

    assert quantity_of(database, "widget") == 10
    assert purchase_count(database) == 0


def test_commit_failure_surfaces_as_storage_failure(coordinator, database, stock, monkeypatch):
    stock("widget", 10)

    def broken_commit(self):
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    monkeypatch.setattr(Session, "commit", broken_commit)

    with pytest.raises(StorageFailure):
        coordinator.process_purchase("widget", 4)

    monkeypatch.undo()
    assert quantity_of(database, "widget") == 10
    assert purchase_count(database) == 0


def test_rollback_failure_does_not_mask_original_error(coordinator, stock, monkeypatch, caplog):
    stock("widget", 1)

    def broken_rollback(self):
        raise SQLAlchemyError("connection lost")

    monkeypatch.setattr(Session, "rollback", broken_rollback)

    with caplog.at_level(logging.ERROR), pytest.raises(InsufficientStock):
        coordinator.process_purchase("widget", 2)

    assert "Error rolling back transaction" in caplog.text



def test_cancelled_catalog_lookup_writes_nothing(database, stock):
    stock("widget", 10)
    cancel = threading.Event()
    requests = []

    def fail_and_cancel(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        cancel.set()
        return httpx.Response(503)

    catalog = RemoteCatalogClient(
        base_url="http://catalog.test",
        transport=httpx.MockTransport(fail_and_cancel),
        sleep=lambda seconds: None,
    )
    coordinator = PurchaseCoordinator(database, catalog)

    with pytest.raises(CatalogRequestCancelled):
        coordinator.process_purchase("widget", 2, cancel_event=cancel)

    assert len(requests) == 1
    assert quantity_of(database, "widget") == 10
    assert purchase_count(database) == 0

@pytest.mark.parametrize(("product_id", "quantity"), [("widget", 0), ("widget", -2), ("", 1), ("widget", True)])
def test_invalid_requests_fail_before_any_io(coordinator, catalog, product_id, quantity):
    with pytest.raises(ValidationError):
        coordinator.process_purchase(product_id, quantity)
    assert catalog.calls == []


def test_set_inventory_requires_known_product(coordinator, database):
    with pytest.raises(ProductNotFound):
        coordinator.set_inventory("ghost", 5)
    assert quantity_of(database, "ghost") is None

    record = coordinator.set_inventory("widget", 5)
    assert record.quantity == 5
    assert quantity_of(database, "widget") == 5


def test_set_inventory_rejects_negative(coordinator, catalog):
    with pytest.raises(ValidationError):
        coordinator.set_inventory("widget", -1)
    assert catalog.calls == []


def run_concurrently(coordinator, requests):
    outcomes = [None] * len(requests)

    def worker(index, product_id, quantity):
        try:
            outcomes[index] = coordinator.process_purchase(product_id, quantity)
        except Exception as e:  # noqa: BLE001
            outcomes[index] = e

    threads = [
        threading.Thread(target=worker, args=(i, product_id, quantity))
        for i, (product_id, quantity) in enumerate(requests)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return outcomes


def test_two_concurrent_purchases_cannot_both_take_contended_stock(coordinator, catalog, database, stock):
    stock("widget", 10)
    catalog.barrier = threading.Barrier(2)

    outcomes = run_concurrently(coordinator, [("widget", 6), ("widget", 6)])

    successes = [o for o in outcomes if isinstance(o, coordinator_module.PurchaseResult)]
    failures = [o for o in outcomes if isinstance(o, InsufficientStock)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert successes[0].remaining_available_quantity == 4
    assert failures[0].requested == 6
    assert failures[0].available in (4, 10)
    assert quantity_of(database, "widget") == 4
    assert purchase_count(database, "widget") == 1


def test_concurrent_purchases_never_oversell(coordinator, database, stock):
    stock("widget", 20)

    outcomes = run_concurrently(coordinator, [("widget", 3)] * 10)

    sold = sum(o.purchase.quantity for o in outcomes if isinstance(o, coordinator_module.PurchaseResult))
    assert sold <= 20
    assert all(
        isinstance(o, (coordinator_module.PurchaseResult, InsufficientStock, StorageFailure)) for o in outcomes
    )
    assert quantity_of(database, "widget") == 20 - sold
    with database.session() as db:
        recorded = db.scalar(select(func.coalesce(func.sum(PurchaseRecord.quantity), 0)))
    assert recorded == sold


def test_inventory_record_never_goes_negative(coordinator, database, stock):
    stock("widget", 5)

    run_concurrently(coordinator, [("widget", 2)] * 6)

    with database.session() as db:
        record = db.get(InventoryRecord, "widget")
        assert record.quantity >= 0
        assert record.quantity == 1
