from __future__ import annotations

import random
import threading
from unittest import mock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from almoxarifado.errors import (
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from almoxarifado.models import Product
from almoxarifado.repositories.movement_repository import MovementRepository
from almoxarifado.repositories.product_repository import ProductRepository
from almoxarifado.schemas import ProductUpdate
from almoxarifado.services.ledger_service import MovementLedger, signed_quantity
from almoxarifado.services.product_service import ProductService
from almoxarifado.services.stock_service import ProductLockRegistry, StockService


def _quantity(db, product_id: int) -> int:
    db.expire_all()
    return ProductService(db).get(product_id).quantity


def _assert_matches_ledger(db, product_id: int) -> None:
    movements = MovementLedger(db).list_by_product(product_id)
    assert _quantity(db, product_id) == sum(signed_quantity(m) for m in movements)


def test_widget_scenario(db, make_product, admin):
    widget = make_product("Widget", min_stock=5)
    stock = StockService(db)
    assert _quantity(db, widget.id) == 0

    m1 = stock.record_movement(widget.id, "entrada", 10, user_id=admin.id)
    assert _quantity(db, widget.id) == 10
    assert widget.id not in [p.id for p in stock.low_stock_products()]

    m2 = stock.record_movement(widget.id, "saída", 8, user_id=admin.id)
    assert _quantity(db, widget.id) == 2
    assert [p.id for p in stock.low_stock_products()] == [widget.id]

    with pytest.raises(InsufficientStockError) as excinfo:
        stock.record_movement(widget.id, "saída", 5, user_id=admin.id)
    assert excinfo.value.available == 2
    assert excinfo.value.requested == 5
    assert excinfo.value.shortfall == 3
    assert _quantity(db, widget.id) == 2

    history = MovementLedger(db).list_by_product(widget.id)
    assert [m.id for m in history] == [m1.id, m2.id]
    _assert_matches_ledger(db, widget.id)


def test_movement_fields(db, make_product, admin):
    product = make_product("Widget")

    movement = StockService(db).record_movement(product.id, "entrada", 4, user_id=admin.id)

    assert movement.id is not None
    assert movement.product_id == product.id
    assert movement.type == "entrada"
    assert movement.quantity == 4
    assert movement.user_id == admin.id
    assert movement.created_at is not None


@pytest.mark.parametrize("quantity", [0, -5])
def test_non_positive_quantity_is_rejected_without_rows(db, make_product, admin, quantity):
    product = make_product("Widget")

    with pytest.raises(ValidationError, match="quantity must be positive"):
        StockService(db).record_movement(product.id, "entrada", quantity, user_id=admin.id)

    assert MovementRepository(db).count_for_product(product.id) == 0
    assert _quantity(db, product.id) == 0


def test_invalid_type_and_missing_user(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db)

    with pytest.raises(ValidationError):
        stock.record_movement(product.id, "transferencia", 1, user_id=admin.id)
    with pytest.raises(ValidationError):
        stock.record_movement(product.id, "entrada", 1, user_id=None)
    assert MovementRepository(db).count_for_product(product.id) == 0


def test_unknown_or_deleted_product(db, make_product, admin):
    stock = StockService(db)
    with pytest.raises(NotFoundError):
        stock.record_movement(999, "entrada", 1, user_id=admin.id)

    product = make_product("Widget")
    ProductService(db).delete(product.id)
    with pytest.raises(NotFoundError):
        stock.record_movement(product.id, "entrada", 1, user_id=admin.id)
    assert MovementRepository(db).count_for_product(product.id) == 0


def test_entrada_then_saida_round_trip(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db)
    stock.record_movement(product.id, "entrada", 3, user_id=admin.id)
    before = _quantity(db, product.id)

    stock.record_movement(product.id, "entrada", 9, user_id=admin.id)
    stock.record_movement(product.id, "saída", 9, user_id=admin.id)

    assert _quantity(db, product.id) == before


def test_saida_of_exact_balance_reaches_zero(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db)
    stock.record_movement(product.id, "entrada", 6, user_id=admin.id)
    stock.record_movement(product.id, "saída", 6, user_id=admin.id)

    assert _quantity(db, product.id) == 0
    with pytest.raises(InsufficientStockError) as excinfo:
        stock.record_movement(product.id, "saída", 1, user_id=admin.id)
    assert excinfo.value.available == 0


def test_random_sequences_keep_quantity_equal_to_ledger(db, make_product, admin):
    rng = random.Random(20261019)
    products = [make_product(f"P{i}") for i in range(3)]
    stock = StockService(db)

    for _ in range(150):
        product = rng.choice(products)
        movement_type = rng.choice(["entrada", "saída"])
        quantity = rng.randint(1, 12)
        try:
            stock.record_movement(product.id, movement_type, quantity, user_id=admin.id)
        except InsufficientStockError as e:
            assert e.requested > e.available
        assert _quantity(db, product.id) >= 0

    for product in products:
        _assert_matches_ledger(db, product.id)
        assert stock.reconcile(product.id).consistent


def test_reconcile_reports_drift(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db)
    stock.record_movement(product.id, "entrada", 5, user_id=admin.id)

    result = stock.reconcile(product.id)
    assert (result.quantity, result.ledger_quantity, result.consistent) == (5, 5, True)

    # simulate a write that bypassed the reconciler
    row = db.get(Product, product.id)
    row.quantity = 7
    db.commit()

    result = stock.reconcile(product.id)
    assert (result.quantity, result.ledger_quantity, result.consistent) == (7, 5, False)


def test_record_reports_balance_and_warning_from_its_own_transaction(db, make_product, admin):
    product = make_product("Widget", min_stock=5)
    stock = StockService(db)

    first = stock.record(product.id, "entrada", 3, user_id=admin.id)
    assert (first.stock_after, first.warning) == (3, "Needs restock")

    second = stock.record(product.id, "entrada", 4, user_id=admin.id)
    assert (second.stock_after, second.warning) == (7, None)
    assert second.movement.quantity == 4


def test_restock_warning(db, make_product, admin):
    product = make_product("Widget", min_stock=3)
    stock = StockService(db)
    assert stock.restock_warning(product) == "Needs restock"

    stock.record_movement(product.id, "entrada", 3, user_id=admin.id)
    assert stock.restock_warning(ProductService(db).get(product.id)) is None


def test_concurrent_saidas_never_oversell(session_factory, make_product, admin):
    admin_id = admin.id
    product_id = make_product("Widget", min_stock=1).id
    with session_factory() as setup:
        StockService(setup).record_movement(product_id, "entrada", 10, user_id=admin_id)

    barrier = threading.Barrier(2)
    outcomes: list[object] = []
    outcomes_lock = threading.Lock()

    def worker() -> None:
        session = session_factory()
        try:
            barrier.wait()
            result: object = "ok"
            try:
                StockService(session).record_movement(product_id, "saída", 6, user_id=admin_id)
            except InsufficientStockError as e:
                result = e
            with outcomes_lock:
                outcomes.append(result)
        finally:
            session.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert outcomes.count("ok") == 1
    failures = [o for o in outcomes if isinstance(o, InsufficientStockError)]
    assert len(failures) == 1
    assert failures[0].available == 4

    check = session_factory()
    try:
        assert _quantity(check, product_id) == 4
        _assert_matches_ledger(check, product_id)
    finally:
        check.close()


def test_lock_registry_is_per_product():
    registry = ProductLockRegistry()
    with registry.hold(1):
        acquired = threading.Event()

        def other_product() -> None:
            with registry.hold(2):
                acquired.set()

        t = threading.Thread(target=other_product)
        t.start()
        assert acquired.wait(timeout=5)
        t.join()

        blocked = threading.Event()

        def same_product() -> None:
            with registry.hold(1):
                blocked.set()

        t2 = threading.Thread(target=same_product)
        t2.start()
        assert not blocked.wait(timeout=0.2)
    t2.join(timeout=5)
    assert blocked.is_set()


def test_lock_registry_drops_locks_once_released(db, make_product, admin):
    registry = ProductLockRegistry()
    stock = StockService(db, locks=registry)

    for missing_id in range(100000, 100050):
        with pytest.raises(NotFoundError):
            stock.record_movement(missing_id, "entrada", 1, user_id=admin.id)
    assert len(registry) == 0

    product = make_product("Widget")
    stock.record_movement(product.id, "entrada", 1, user_id=admin.id)
    with pytest.raises(InsufficientStockError):
        stock.record_movement(product.id, "saída", 5, user_id=admin.id)
    assert len(registry) == 0


def test_lock_registry_keeps_lock_while_someone_waits():
    registry = ProductLockRegistry()
    entered = threading.Event()

    def waiter() -> None:
        with registry.hold(7):
            entered.set()

    with registry.hold(7):
        t = threading.Thread(target=waiter)
        t.start()
        assert not entered.wait(timeout=0.2)
        assert len(registry) == 1
    t.join(timeout=5)
    assert entered.is_set()
    assert len(registry) == 0


def test_version_column_detects_lost_update(session_factory, make_product):
    product = make_product("Widget")
    first = session_factory()
    second = session_factory()
    try:
        stale = first.get(Product, product.id)
        ProductService(second).update(product.id, ProductUpdate(min_stock=2))

        stale.quantity = 5
        with pytest.raises(StaleDataError):
            first.flush()
        first.rollback()
    finally:
        first.close()
        second.close()


def test_conflicts_are_retried_then_surface(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db, retry_attempts=3)

    with mock.patch.object(StockService, "_apply", side_effect=StaleDataError("stale")) as apply:
        with pytest.raises(ConflictError):
            stock.record_movement(product.id, "entrada", 1, user_id=admin.id)
    assert apply.call_count == 3
    assert MovementRepository(db).count_for_product(product.id) == 0


def test_conflict_then_success(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db, retry_attempts=3)
    real_apply = StockService._apply
    calls = []

    def flaky(self, *args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StaleDataError("stale")
        return real_apply(self, *args, **kwargs)

    with mock.patch.object(StockService, "_apply", flaky):
        stock.record_movement(product.id, "entrada", 2, user_id=admin.id)

    assert len(calls) == 2
    assert _quantity(db, product.id) == 2
    assert MovementRepository(db).count_for_product(product.id) == 1


def test_storage_failure_is_loud_and_writes_nothing(db, make_product, admin, monkeypatch):
    product = make_product("Widget")

    def db_down(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(ProductRepository, "get_for_update", db_down)

    with pytest.raises(StorageUnavailableError):
        StockService(db).record_movement(product.id, "entrada", 1, user_id=admin.id)

    monkeypatch.undo()
    assert MovementRepository(db).count_for_product(product.id) == 0
    assert _quantity(db, product.id) == 0


def test_failure_between_ledger_insert_and_balance_update_rolls_back(db, make_product, admin):
    product = make_product("Widget")
    stock = StockService(db)
    stock.record_movement(product.id, "entrada", 5, user_id=admin.id)

    original_flush = db.flush
    flushes = []

    def failing_flush(*args, **kwargs):
        flushes.append(1)
        # first flush inserts the movement, the second writes the balance
        if len(flushes) == 2:
            raise OperationalError("UPDATE products", {}, Exception("disk I/O error"))
        return original_flush(*args, **kwargs)

    with mock.patch.object(db, "flush", side_effect=failing_flush):
        with pytest.raises(StorageUnavailableError):
            stock.record_movement(product.id, "saída", 2, user_id=admin.id)

    assert MovementRepository(db).count_for_product(product.id) == 1
    assert _quantity(db, product.id) == 5
    _assert_matches_ledger(db, product.id)
