import threading

import pytest

from conftest import current_available
from errors import OutOfStock
from inventory import InventoryLedger
from models import db


def test_decrement_takes_one_copy(app, make_book):
    book = make_book(quantity=2)
    InventoryLedger().decrement(book.book_id)
    db.session.commit()
    assert current_available(book.book_id) == 1


def test_decrement_refuses_when_empty(app, make_book):
    book = make_book(quantity=1, available=0)
    with pytest.raises(OutOfStock):
        InventoryLedger().decrement(book.book_id)
    db.session.rollback()
    assert current_available(book.book_id) == 0


def test_decrement_ignores_stale_in_memory_count(app, make_book):
    book = make_book(quantity=1)
    ledger = InventoryLedger()
    assert book.available == 1
    ledger.decrement(book.book_id)
    db.session.commit()
    # A second caller that read available == 1 earlier still cannot take a copy.
    with pytest.raises(OutOfStock):
        ledger.decrement(book.book_id)
    db.session.rollback()
    assert current_available(book.book_id) == 0


def test_increment_is_clamped_at_quantity(app, make_book):
    book = make_book(quantity=2, available=1)
    ledger = InventoryLedger()
    assert ledger.increment(book.book_id) is True
    assert ledger.increment(book.book_id) is False
    db.session.commit()
    assert current_available(book.book_id) == 2


def test_concurrent_borrows_of_last_copy(app, circulation, scope, make_user, make_book):
    book = make_book(quantity=1)
    users = [make_user(), make_user()]
    book_id = book.book_id
    user_ids = [u.user_id for u in users]
    barrier = threading.Barrier(2)
    outcomes = []

    def borrow(user_id):
        with app.app_context():
            barrier.wait()
            try:
                circulation.loans.borrow(scope, user_id, book_id)
                outcomes.append('ok')
            except OutOfStock:
                outcomes.append('out_of_stock')
            finally:
                db.session.remove()

    threads = [threading.Thread(target=borrow, args=(uid,)) for uid in user_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ['ok', 'out_of_stock']
    assert current_available(book_id) == 0
