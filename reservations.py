import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import (
    DuplicateLoan,
    DuplicateReservation,
    Forbidden,
    NotAvailableForReservation,
    NotFound,
    OutOfStock,
    PolicyLimitExceeded,
)
from models import Book, Loan, LoanStatus, NotificationType, Reservation, ReservationStatus, db
from transactions import retry_db_operation

logger = logging.getLogger(__name__)


class ReservationQueue:
    """FIFO waiting list per book.

    A promoted (READY) reservation holds one copy taken out of ``available``;
    the copy goes back to the shelf when the reservation expires or is
    cancelled, and is handed to the borrower when it is fulfilled.
    """

    def __init__(self, ledger, policy, sink, clock):
        self.ledger = ledger
        self.policy = policy
        self.sink = sink
        self.clock = clock

    @retry_db_operation()
    def reserve(self, scope, user_id, book_id):
        scope.member(user_id)
        book = Book.query.filter_by(book_id=book_id, school_id=scope.tenant_id).first()
        if not book:
            logger.debug(f"Book not found: book_id={book_id}")
            raise NotFound('Book not found')
        if book.available > 0:
            logger.debug(f"Book is available: book_id={book_id}")
            raise NotAvailableForReservation()

        on_loan = Loan.query.filter_by(user_id=user_id, book_id=book_id, status=LoanStatus.ACTIVE).first()
        if on_loan:
            logger.debug(f"User already has book on loan: book_id={book_id}")
            raise DuplicateLoan('You already have this book on loan')

        settings = self.policy.get_or_create_defaults(scope.tenant_id)
        active_reservations = Reservation.query.filter(
            Reservation.user_id == user_id,
            Reservation.school_id == scope.tenant_id,
            Reservation.status.in_(ReservationStatus.ACTIVE),
        ).count()
        if active_reservations >= settings.max_reservations:
            raise PolicyLimitExceeded(f'You can have at most {settings.max_reservations} active reservations')

        existing = Reservation.query.filter(
            Reservation.user_id == user_id,
            Reservation.book_id == book_id,
            Reservation.status.in_(ReservationStatus.ACTIVE),
        ).first()
        if existing:
            logger.debug(f"User already reserved book: book_id={book_id}")
            raise DuplicateReservation()

        reservation = Reservation(
            user_id=user_id,
            book_id=book_id,
            school_id=scope.tenant_id,
            status=ReservationStatus.WAITING,
            created_at=self.clock.now(),
        )
        db.session.add(reservation)
        try:
            db.session.flush()
        except IntegrityError:
            raise DuplicateReservation()
        logger.debug(f"Book reserved: book_id={book_id} by user_id={user_id}")
        return reservation

    def promote_next(self, book_id, tenant_id):
        """Hand one free copy to the oldest WAITING reservation.

        Order is created_at then reservation_id, nothing else. Runs inside the
        caller's transaction. Returns the promoted reservation or None.
        """
        waiting = (
            Reservation.query
            .filter_by(book_id=book_id, school_id=tenant_id, status=ReservationStatus.WAITING)
            .order_by(Reservation.created_at.asc(), Reservation.reservation_id.asc())
            .all()
        )
        if not waiting:
            return None
        try:
            self.ledger.decrement(book_id)
        except OutOfStock:
            logger.debug(f"No free copy to promote reservation for book_id={book_id}")
            return None

        settings = self.policy.get_or_create_defaults(tenant_id)
        expires_at = self.clock.now() + timedelta(days=settings.reservation_days)
        for candidate in waiting:
            claimed = db.session.execute(
                update(Reservation)
                .where(
                    Reservation.reservation_id == candidate.reservation_id,
                    Reservation.status == ReservationStatus.WAITING,
                )
                .values(status=ReservationStatus.READY, expires_at=expires_at)
            ).rowcount
            if not claimed:
                continue
            self.sink.emit(
                candidate.user_id,
                tenant_id,
                NotificationType.RESERVATION_READY,
                'Your reservation is ready!',
                f'"{candidate.book.title}" is now available. You can pick it up within '
                f'{settings.reservation_days} days.',
                reservation_id=candidate.reservation_id,
            )
            logger.debug(f"Reservation promoted: reservation_id={candidate.reservation_id} book_id={book_id}")
            return candidate

        self.ledger.increment(book_id)
        return None

    def fulfil_ready(self, scope, user_id, book_id):
        """Close the user's READY reservation for a book they are borrowing.

        Returns True when the copy held for it was claimed, in which case the
        caller must not take another copy from the shelf.
        """
        claimed = db.session.execute(
            update(Reservation)
            .where(
                Reservation.user_id == user_id,
                Reservation.book_id == book_id,
                Reservation.school_id == scope.tenant_id,
                Reservation.status == ReservationStatus.READY,
            )
            .values(status=ReservationStatus.FULFILLED)
        ).rowcount
        if claimed:
            logger.debug(f"Reservation fulfilled: book_id={book_id} user_id={user_id}")
        return bool(claimed)

    @retry_db_operation()
    def cancel(self, scope, reservation_id, user_id):
        scope.member(user_id)
        reservation = Reservation.query.filter(
            Reservation.reservation_id == reservation_id,
            Reservation.school_id == scope.tenant_id,
            Reservation.status.in_(ReservationStatus.ACTIVE),
        ).first()
        if not reservation:
            raise NotFound('Reservation not found or cannot be cancelled')
        if reservation.user_id != user_id:
            raise Forbidden('You can only cancel your own reservations')

        previous = reservation.status
        claimed = db.session.execute(
            update(Reservation)
            .where(
                Reservation.reservation_id == reservation_id,
                Reservation.status == previous,
            )
            .values(status=ReservationStatus.CANCELLED)
        ).rowcount
        if not claimed:
            raise NotFound('Reservation not found or cannot be cancelled')

        if previous == ReservationStatus.READY:
            self.ledger.increment(reservation.book_id)
            self.promote_next(reservation.book_id, reservation.school_id)
        logger.debug(f"Reservation cancelled: reservation_id={reservation_id}")
        return reservation

    def expire_stale(self):
        """Expire READY reservations whose pick-up window has passed.

        Each reservation is handled in its own transaction; a failure is
        logged and the sweep moves on. The released copy is offered to the
        next waiter for the same book.
        """
        now = self.clock.now()
        stale_ids = [
            row.reservation_id
            for row in db.session.query(Reservation.reservation_id)
            .filter(
                Reservation.status == ReservationStatus.READY,
                Reservation.expires_at < now,
            )
            .order_by(Reservation.expires_at.asc())
        ]
        expired = 0
        for reservation_id in stale_ids:
            try:
                if self._expire_one(reservation_id, now):
                    expired += 1
            except Exception as e:
                logger.error(f"Failed to expire reservation_id={reservation_id}: {str(e)}")
        logger.debug(f"Reservation expiry completed: {expired} of {len(stale_ids)} reservations expired")
        return expired

    @retry_db_operation()
    def _expire_one(self, reservation_id, now):
        claimed = db.session.execute(
            update(Reservation)
            .where(
                Reservation.reservation_id == reservation_id,
                Reservation.status == ReservationStatus.READY,
                Reservation.expires_at < now,
            )
            .values(status=ReservationStatus.EXPIRED)
        ).rowcount
        if not claimed:
            return False

        reservation = db.session.get(Reservation, reservation_id)
        self.ledger.increment(reservation.book_id)
        self.sink.emit(
            reservation.user_id,
            reservation.school_id,
            NotificationType.RESERVATION_EXPIRED,
            'Reservation expired',
            f'Your reservation for "{reservation.book.title}" expired because it was not picked up in time.',
            reservation_id=reservation.reservation_id,
        )
        self.promote_next(reservation.book_id, reservation.school_id)
        return True

    def waiting_count(self, scope, book_id):
        return Reservation.query.filter_by(
            book_id=book_id,
            school_id=scope.tenant_id,
            status=ReservationStatus.WAITING,
        ).count()

    def list_for_user(self, scope, user_id):
        return (
            Reservation.query
            .filter_by(user_id=user_id, school_id=scope.tenant_id)
            .order_by(Reservation.created_at.desc())
            .all()
        )

    def list_for_tenant(self, scope):
        return (
            Reservation.query
            .filter_by(school_id=scope.tenant_id)
            .order_by(Reservation.created_at.desc())
            .all()
        )
