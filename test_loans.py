from datetime import timedelta

import pytest

from conftest import current_available
from errors import (
    DuplicateLoan,
    Forbidden,
    NotFound,
    OutOfStock,
    Overdue,
    PolicyLimitExceeded,
    RenewalLimitExceeded,
    ReservationConflict,
)
from models import Loan, LoanStatus, Notification, NotificationType, PolicySettings, db
from tenancy import TenantScope


def test_borrow_creates_active_loan(circulation, scope, make_user, make_book, clock):
    user = make_user()
    book = make_book(quantity=2)
    loan = circulation.loans.borrow(scope, user.user_id, book.book_id)
    assert loan.status == LoanStatus.ACTIVE
    assert loan.borrowed_at == clock.now()
    assert loan.due_date == clock.now() + timedelta(days=14)
    assert loan.renew_count == 0
    assert current_available(book.book_id) == 1


def test_borrow_last_copy_then_out_of_stock(circulation, scope, make_user, make_book):
    book = make_book(quantity=1)
    circulation.loans.borrow(scope, make_user().user_id, book.book_id)
    with pytest.raises(OutOfStock):
        circulation.loans.borrow(scope, make_user().user_id, book.book_id)
    assert current_available(book.book_id) == 0
    assert Loan.query.count() == 1


def test_borrow_same_book_twice_is_rejected(circulation, scope, make_user, make_book):
    user = make_user()
    book = make_book(quantity=3)
    circulation.loans.borrow(scope, user.user_id, book.book_id)
    with pytest.raises(DuplicateLoan):
        circulation.loans.borrow(scope, user.user_id, book.book_id)
    assert current_available(book.book_id) == 2


def test_fourth_borrow_exceeds_max_loans(circulation, scope, make_user, make_book):
    user = make_user()
    for i in range(3):
        book = make_book(title=f"Book {i}")
        circulation.loans.borrow(scope, user.user_id, book.book_id)
    fourth = make_book(title="Book 4")
    with pytest.raises(PolicyLimitExceeded):
        circulation.loans.borrow(scope, user.user_id, fourth.book_id)
    assert current_available(fourth.book_id) == 1


def test_borrow_from_other_school_is_forbidden(circulation, scope, make_user, make_book, other_school):
    outsider = make_user(school_id=other_school.school_id)
    book = make_book()
    with pytest.raises(Forbidden):
        circulation.loans.borrow(scope, outsider.user_id, book.book_id)


def test_borrow_book_of_other_school_is_not_found(circulation, scope, make_user, make_book, other_school):
    user = make_user()
    foreign_book = make_book(school_id=other_school.school_id)
    with pytest.raises(NotFound):
        circulation.loans.borrow(scope, user.user_id, foreign_book.book_id)
    assert current_available(foreign_book.book_id) == 1


def test_unknown_user_is_not_found(circulation, scope, make_book):
    with pytest.raises(NotFound):
        circulation.loans.borrow(scope, 999, make_book().book_id)


def test_return_on_time_has_no_fine(circulation, scope, make_user, make_book, clock):
    user = make_user()
    book = make_book()
    loan = circulation.loans.borrow(scope, user.user_id, book.book_id)
    clock.advance(days=5)
    returned = circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    assert returned.status == LoanStatus.RETURNED
    assert returned.returned_at == clock.now()
    assert returned.fine_amount == 0
    assert current_available(book.book_id) == 1
    assert Notification.query.filter_by(type=NotificationType.FINE_NOTICE).count() == 0


def test_late_return_is_fined_once(circulation, scope, make_user, make_book, clock):
    user = make_user()
    book = make_book()
    loan = circulation.loans.borrow(scope, user.user_id, book.book_id)
    clock.advance(days=14 + 10)
    returned = circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    assert returned.fine_amount == 10
    assert returned.fine_paid is False
    assert Notification.query.filter_by(type=NotificationType.FINE_NOTICE, loan_id=loan.loan_id).count() == 1

    clock.advance(days=30)
    with pytest.raises(NotFound):
        circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    assert db.session.get(Loan, loan.loan_id).fine_amount == 10


def test_fine_uses_tenant_cap(circulation, scope, make_user, make_book, clock, school):
    PolicySettings.query.filter_by(school_id=school.school_id).one().max_fine = 5.0
    db.session.commit()
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    clock.advance(days=60)
    assert circulation.loans.return_loan(scope, user.user_id, loan.loan_id).fine_amount == 5.0


def test_return_of_someone_elses_loan_is_not_found(circulation, scope, make_user, make_book):
    owner, other = make_user(), make_user()
    book = make_book()
    loan = circulation.loans.borrow(scope, owner.user_id, book.book_id)
    with pytest.raises(NotFound):
        circulation.loans.return_loan(scope, other.user_id, loan.loan_id)
    assert current_available(book.book_id) == 0


def test_return_through_other_school_scope_is_not_found(circulation, scope, make_user, make_book, other_school):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    with pytest.raises(NotFound):
        circulation.loans.return_loan(TenantScope(other_school.school_id), user.user_id, loan.loan_id)


def test_renew_extends_due_date(circulation, scope, make_user, make_book, clock):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    original_due = loan.due_date
    clock.advance(days=3)
    renewed = circulation.loans.renew(scope, user.user_id, loan.loan_id)
    assert renewed.renew_count == 1
    assert renewed.due_date == original_due + timedelta(days=14)


def test_renew_limit(circulation, scope, make_user, make_book):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    circulation.loans.renew(scope, user.user_id, loan.loan_id)
    circulation.loans.renew(scope, user.user_id, loan.loan_id)
    with pytest.raises(RenewalLimitExceeded):
        circulation.loans.renew(scope, user.user_id, loan.loan_id)
    assert db.session.get(Loan, loan.loan_id).renew_count == 2


def test_renew_limit_wins_over_other_conditions(circulation, scope, make_user, make_book, clock):
    user, waiter = make_user(), make_user()
    book = make_book(quantity=1)
    loan = circulation.loans.borrow(scope, user.user_id, book.book_id)
    circulation.loans.renew(scope, user.user_id, loan.loan_id)
    circulation.loans.renew(scope, user.user_id, loan.loan_id)
    circulation.reservations.reserve(scope, waiter.user_id, book.book_id)
    clock.advance(days=100)
    with pytest.raises(RenewalLimitExceeded):
        circulation.loans.renew(scope, user.user_id, loan.loan_id)


def test_renew_blocked_by_waiting_reservation(circulation, scope, make_user, make_book):
    user, waiter = make_user(), make_user()
    book = make_book(quantity=1)
    loan = circulation.loans.borrow(scope, user.user_id, book.book_id)
    circulation.reservations.reserve(scope, waiter.user_id, book.book_id)
    assert circulation.reservations.waiting_count(scope, book.book_id) == 1
    with pytest.raises(ReservationConflict):
        circulation.loans.renew(scope, user.user_id, loan.loan_id)
    assert db.session.get(Loan, loan.loan_id).renew_count == 0


def test_overdue_loan_cannot_be_renewed(circulation, scope, make_user, make_book, clock):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    clock.advance(days=15)
    with pytest.raises(Overdue):
        circulation.loans.renew(scope, user.user_id, loan.loan_id)


def test_mark_fine_paid(circulation, scope, make_user, make_book, clock):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    clock.advance(days=16)
    circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    assert circulation.loans.unpaid_fines(scope, user.user_id)['total_fine'] == 2

    paid = circulation.loans.mark_fine_paid(scope, loan.loan_id)
    assert paid.fine_paid is True
    assert circulation.loans.unpaid_fines(scope, user.user_id) == {'loans': [], 'total_fine': 0}


def test_mark_fine_paid_requires_a_fine(circulation, scope, make_user, make_book):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    with pytest.raises(NotFound):
        circulation.loans.mark_fine_paid(scope, loan.loan_id)


def test_mark_fine_paid_other_school_is_not_found(circulation, scope, make_user, make_book, clock, other_school):
    user = make_user()
    loan = circulation.loans.borrow(scope, user.user_id, make_book().book_id)
    clock.advance(days=20)
    circulation.loans.return_loan(scope, user.user_id, loan.loan_id)
    with pytest.raises(NotFound):
        circulation.loans.mark_fine_paid(TenantScope(other_school.school_id), loan.loan_id)


def test_list_loans_newest_first(circulation, scope, make_user, make_book, clock):
    user = make_user()
    first = circulation.loans.borrow(scope, user.user_id, make_book(title="A").book_id)
    clock.advance(hours=1)
    second = circulation.loans.borrow(scope, user.user_id, make_book(title="B").book_id)
    assert [l.loan_id for l in circulation.loans.list_loans(scope, user.user_id)] == [second.loan_id, first.loan_id]


def test_available_stays_in_bounds_over_mixed_sequence(circulation, scope, make_user, make_book, clock):
    book = make_book(quantity=2)
    users = [make_user() for _ in range(4)]
    loans = {}
    for user in users:
        try:
            loans[user.user_id] = circulation.loans.borrow(scope, user.user_id, book.book_id)
        except OutOfStock:
            circulation.reservations.reserve(scope, user.user_id, book.book_id)
        assert 0 <= current_available(book.book_id) <= 2

    for user_id, loan in list(loans.items()):
        clock.advance(days=1)
        circulation.loans.return_loan(scope, user_id, loan.loan_id)
        assert 0 <= current_available(book.book_id) <= 2

    clock.advance(days=10)
    circulation.reservations.expire_stale()
    circulation.reservations.expire_stale()
    assert current_available(book.book_id) == 2


def test_reading_history_stats_and_monthly_counts(circulation, scope, make_user, make_book, clock):
    user = make_user()
    first = circulation.loans.borrow(scope, user.user_id, make_book(title="A").book_id)
    clock.advance(days=20)
    circulation.loans.return_loan(scope, user.user_id, first.loan_id)
    circulation.loans.borrow(scope, user.user_id, make_book(title="B").book_id)
    clock.advance(days=40)

    history = circulation.loans.reading_history(scope, user.user_id)
    assert history['stats'] == {
        'total_loans': 2,
        'completed_loans': 1,
        'active_loans': 1,
        'overdue_count': 1,
        'total_fines': 6.0,
        'unpaid_fines': 6.0,
    }
    assert len(history['monthly']) == 12
    assert history['monthly'][0] == {'month': '2024-04', 'count': 0}
    assert history['monthly'][-3:] == [
        {'month': '2025-01', 'count': 1},
        {'month': '2025-02', 'count': 1},
        {'month': '2025-03', 'count': 0},
    ]
    assert [l.book.title for l in history['loans']] == ["B", "A"]


def test_reading_history_of_other_school_member_is_forbidden(circulation, scope, make_user, other_school):
    outsider = make_user(school_id=other_school.school_id)
    with pytest.raises(Forbidden):
        circulation.loans.reading_history(scope, outsider.user_id)
