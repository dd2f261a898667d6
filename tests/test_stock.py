import pytest

from storefront.errors import InsufficientStock, InvalidQuantity, ProductNotFound


def test_try_decrement_takes_stock(session_factory, ledger, make_product, stock_of):
    product = make_product(stock=5)

    with session_factory.begin() as db:
        remaining = ledger.try_decrement(db, product.id, 3)

    assert remaining == 2
    assert stock_of(product.id) == 2


def test_try_decrement_can_take_last_unit(session_factory, ledger, make_product, stock_of):
    product = make_product(stock=1)

    with session_factory.begin() as db:
        assert ledger.try_decrement(db, product.id, 1) == 0

    assert stock_of(product.id) == 0


def test_try_decrement_refuses_more_than_available(session_factory, ledger, make_product, stock_of):
    product = make_product(stock=2)

    with pytest.raises(InsufficientStock) as exc_info:
        with session_factory.begin() as db:
            ledger.try_decrement(db, product.id, 3)

    assert exc_info.value.available == 2
    assert exc_info.value.requested == 3
    assert stock_of(product.id) == 2


def test_try_decrement_rejects_non_positive_quantity(session_factory, ledger, make_product):
    product = make_product(stock=2)

    with session_factory.begin() as db:
        with pytest.raises(InvalidQuantity):
            ledger.try_decrement(db, product.id, 0)


def test_try_decrement_unknown_product(session_factory, ledger):
    with session_factory.begin() as db:
        with pytest.raises(ProductNotFound):
            ledger.try_decrement(db, 999, 1)


def test_decrement_rolls_back_with_the_transaction(session_factory, ledger, make_product, stock_of):
    product = make_product(stock=4)

    with pytest.raises(RuntimeError):
        with session_factory.begin() as db:
            ledger.try_decrement(db, product.id, 4)
            raise RuntimeError("boom")

    assert stock_of(product.id) == 4


def test_increment_restores_stock(session_factory, ledger, make_product, stock_of):
    product = make_product(stock=0)

    with session_factory.begin() as db:
        assert ledger.increment(db, product.id, 4) == 4

    assert stock_of(product.id) == 4


def test_increment_unknown_product_is_fatal(session_factory, ledger):
    with session_factory.begin() as db:
        with pytest.raises(ProductNotFound):
            ledger.increment(db, 999, 1)


def test_available_and_low_stock(session_factory, ledger, make_product):
    plenty = make_product(stock=50)
    few = make_product(stock=2)
    none = make_product(stock=0)
    make_product(stock=1, active=False)

    with session_factory() as db:
        assert ledger.available(db, plenty.id) == 50
        assert ledger.is_available(db, few.id, 2)
        assert not ledger.is_available(db, few.id, 3)
        assert not ledger.is_available(db, 999, 1)
        low = ledger.low_stock(db, 2)

    assert [p.id for p in low] == [none.id, few.id]
