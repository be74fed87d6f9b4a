import logging
import math
from collections import Counter
from datetime import datetime, time, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from errors import (
    DuplicateLoan,
    NotFound,
    Overdue,
    PolicyLimitExceeded,
    RenewalLimitExceeded,
    ReservationConflict,
)
from models import Book, Loan, LoanStatus, NotificationType, School, User, db
from transactions import retry_db_operation

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def days_between(earlier, later):
    """Whole days from ``earlier`` to ``later``, any started day counts."""
    return math.ceil((later - earlier).total_seconds() / SECONDS_PER_DAY)


def calculate_fine(due_date, fine_per_day, max_fine, now):
    if now <= due_date:
        return 0.0
    fine = days_between(due_date, now) * fine_per_day
    return round(min(fine, max_fine), 2)


class LoanManager:
    def __init__(self, ledger, policy, reservations, sink, mailer, clock):
        self.ledger = ledger
        self.policy = policy
        self.reservations = reservations
        self.sink = sink
        self.mailer = mailer
        self.clock = clock

    @retry_db_operation()
    def borrow(self, scope, user_id, book_id):
        scope.member(user_id)
        settings = self.policy.get_or_create_defaults(scope.tenant_id)

        active_loans = Loan.query.filter_by(user_id=user_id, status=LoanStatus.ACTIVE).count()
        if active_loans >= settings.max_loans:
            logger.debug(f"Loan limit reached: user_id={user_id} active={active_loans}")
            raise PolicyLimitExceeded(f'You can borrow at most {settings.max_loans} books')

        book = Book.query.filter_by(book_id=book_id, school_id=scope.tenant_id).first()
        if not book:
            logger.debug(f"Book not found: book_id={book_id}")
            raise NotFound('Book not found')

        existing = Loan.query.filter_by(user_id=user_id, book_id=book_id, status=LoanStatus.ACTIVE).first()
        if existing:
            logger.debug(f"Duplicate loan: book_id={book_id} user_id={user_id}")
            raise DuplicateLoan()

        if not self.reservations.fulfil_ready(scope, user_id, book_id):
            self.ledger.decrement(book_id)

        now = self.clock.now()
        loan = Loan(
            user_id=user_id,
            book_id=book_id,
            school_id=scope.tenant_id,
            borrowed_at=now,
            due_date=now + timedelta(days=settings.loan_days),
            status=LoanStatus.ACTIVE,
        )
        db.session.add(loan)
        try:
            db.session.flush()
        except IntegrityError:
            raise DuplicateLoan()
        logger.debug(f"Book borrowed: book_id={book_id} by user_id={user_id}")
        return loan

    def _active_loan(self, scope, user_id, loan_id):
        loan = Loan.query.filter_by(
            loan_id=loan_id,
            user_id=user_id,
            school_id=scope.tenant_id,
            status=LoanStatus.ACTIVE,
        ).first()
        if not loan:
            logger.debug(f"Invalid loan: loan_id={loan_id}")
            raise NotFound('Loan not found')
        return loan

    @retry_db_operation()
    def return_loan(self, scope, user_id, loan_id):
        loan = self._active_loan(scope, user_id, loan_id)
        settings = self.policy.get_or_create_defaults(scope.tenant_id)
        now = self.clock.now()
        fine = calculate_fine(loan.due_date, settings.fine_per_day, settings.max_fine, now)

        closed = db.session.execute(
            update(Loan)
            .where(Loan.loan_id == loan_id, Loan.status == LoanStatus.ACTIVE)
            .values(status=LoanStatus.RETURNED, returned_at=now, fine_amount=fine)
        ).rowcount
        if not closed:
            raise NotFound('Loan not found')
        self.ledger.increment(loan.book_id)

        if fine > 0:
            self.sink.emit(
                user_id,
                scope.tenant_id,
                NotificationType.FINE_NOTICE,
                'Late return fine',
                f'A late fee of {fine:.2f} was charged for "{loan.book.title}".',
                loan_id=loan_id,
            )
        logger.debug(f"Book returned: loan_id={loan_id} fine_amount={fine}")

        self.reservations.promote_next(loan.book_id, scope.tenant_id)
        return loan

    @retry_db_operation()
    def renew(self, scope, user_id, loan_id):
        loan = self._active_loan(scope, user_id, loan_id)
        settings = self.policy.get_or_create_defaults(scope.tenant_id)

        if loan.renew_count >= settings.max_renewals:
            raise RenewalLimitExceeded(f'You can renew at most {settings.max_renewals} times')
        if self.reservations.waiting_count(scope, loan.book_id) > 0:
            raise ReservationConflict()
        if loan.is_overdue(self.clock.now()):
            raise Overdue()

        renewed = db.session.execute(
            update(Loan)
            .where(
                Loan.loan_id == loan_id,
                Loan.status == LoanStatus.ACTIVE,
                Loan.renew_count == loan.renew_count,
            )
            .values(
                due_date=loan.due_date + timedelta(days=settings.loan_days),
                renew_count=loan.renew_count + 1,
            )
        ).rowcount
        if not renewed:
            # Renewed or returned by a concurrent request; re-check on a fresh read.
            raise NotFound('Loan changed, please try again')
        logger.debug(f"Loan renewed: loan_id={loan_id}")
        return loan

    @retry_db_operation()
    def mark_fine_paid(self, scope, loan_id):
        loan = Loan.query.filter(
            Loan.loan_id == loan_id,
            Loan.school_id == scope.tenant_id,
            Loan.fine_amount > 0,
        ).first()
        if not loan:
            raise NotFound('No fine recorded for this loan')
        loan.fine_paid = True
        logger.debug(f"Fine marked paid: loan_id={loan_id}")
        return loan

    def list_loans(self, scope, user_id):
        return (
            Loan.query
            .filter_by(user_id=user_id, school_id=scope.tenant_id)
            .order_by(Loan.borrowed_at.desc())
            .all()
        )

    def unpaid_fines(self, scope, user_id):
        loans = Loan.query.filter(
            Loan.user_id == user_id,
            Loan.school_id == scope.tenant_id,
            Loan.fine_amount > 0,
            Loan.fine_paid.is_(False),
        ).all()
        return {'loans': loans, 'total_fine': round(sum(l.fine_amount for l in loans), 2)}

    def reading_history(self, scope, user_id, months=12):
        """A member's loans with summary counts and borrows per month.

        ``monthly`` covers the last ``months`` calendar months, oldest first,
        including the current one.
        """
        scope.member(user_id)
        loans = self.list_loans(scope, user_id)
        now = self.clock.now()
        active = [l for l in loans if l.status == LoanStatus.ACTIVE]
        stats = {
            'total_loans': len(loans),
            'completed_loans': sum(1 for l in loans if l.status == LoanStatus.RETURNED),
            'active_loans': len(active),
            'overdue_count': sum(1 for l in active if l.is_overdue(now)),
            'total_fines': round(sum(l.fine_amount for l in loans), 2),
            'unpaid_fines': round(sum(l.fine_amount for l in loans if l.fine_amount > 0 and not l.fine_paid), 2),
        }
        borrowed = Counter((l.borrowed_at.year, l.borrowed_at.month) for l in loans)
        monthly = []
        for back in range(months - 1, -1, -1):
            year, month = divmod(now.year * 12 + now.month - 1 - back, 12)
            monthly.append({'month': f'{year}-{month + 1:02d}', 'count': borrowed[(year, month + 1)]})
        return {'stats': stats, 'monthly': monthly, 'loans': loans}

    def sweep_overdue_notifications(self, tenant_id=None):
        """Send due-soon warnings and periodic overdue reminders.

        Safe to run more than once a day: each loan gets at most one
        notification of each kind per calendar day. With ``tenant_id`` only
        that school's loans are swept.
        """
        now = self.clock.now()
        start_of_day = datetime.combine(now.date(), time.min)
        end_of_tomorrow = datetime.combine(now.date() + timedelta(days=1), time.max)
        results = {'warnings': 0, 'reminders': 0, 'emails_sent': 0}
        active = [Loan.status == LoanStatus.ACTIVE]
        if tenant_id is not None:
            active.append(Loan.school_id == tenant_id)

        due_soon = [
            row.loan_id for row in db.session.query(Loan.loan_id).filter(
                *active,
                Loan.due_date >= now,
                Loan.due_date <= end_of_tomorrow,
            )
        ]
        for loan_id in due_soon:
            try:
                sent, emailed = self._warn_due_soon(loan_id, now, start_of_day)
            except Exception as e:
                logger.error(f"Due-soon warning failed for loan_id={loan_id}: {str(e)}")
                continue
            results['warnings'] += sent
            results['emails_sent'] += emailed

        overdue = [
            row.loan_id for row in db.session.query(Loan.loan_id).filter(
                *active,
                Loan.due_date < now,
            )
        ]
        for loan_id in overdue:
            try:
                sent, emailed = self._remind_overdue(loan_id, now, start_of_day)
            except Exception as e:
                logger.error(f"Overdue reminder failed for loan_id={loan_id}: {str(e)}")
                continue
            results['reminders'] += sent
            results['emails_sent'] += emailed

        logger.debug(
            f"Overdue sweep completed: {results['warnings']} warnings, "
            f"{results['reminders']} reminders, {results['emails_sent']} emails"
        )
        return results

    @retry_db_operation()
    def _warn_due_soon(self, loan_id, now, start_of_day):
        loan = db.session.get(Loan, loan_id)
        if loan.status != LoanStatus.ACTIVE:
            return 0, 0
        if self.sink.already_emitted(NotificationType.LOAN_DUE_SOON, start_of_day, loan_id=loan_id):
            return 0, 0
        title = 'Due date approaching'
        message = f'"{loan.book.title}" is due tomorrow. Please return or renew it.'
        notification = self.sink.emit(
            loan.user_id, loan.school_id, NotificationType.LOAN_DUE_SOON, title, message, loan_id=loan_id,
        )
        return 1, self._email(loan, notification, title, message)

    @retry_db_operation()
    def _remind_overdue(self, loan_id, now, start_of_day):
        loan = db.session.get(Loan, loan_id)
        if loan.status != LoanStatus.ACTIVE:
            return 0, 0
        days_overdue = days_between(loan.due_date, now)
        # Remind on day 1, 4, 7, ...
        if days_overdue % 3 != 1:
            return 0, 0
        if self.sink.already_emitted(NotificationType.OVERDUE_REMINDER, start_of_day, loan_id=loan_id):
            return 0, 0
        settings = self.policy.get_or_create_defaults(loan.school_id)
        estimated = calculate_fine(loan.due_date, settings.fine_per_day, settings.max_fine, now)
        title = 'Overdue book reminder'
        message = (
            f'"{loan.book.title}" is {days_overdue} day(s) overdue. '
            f'Estimated fine: {estimated:.2f}. Please return it as soon as possible.'
        )
        notification = self.sink.emit(
            loan.user_id, loan.school_id, NotificationType.OVERDUE_REMINDER, title, message, loan_id=loan_id,
        )
        return 1, self._email(loan, notification, title, message)

    def _email(self, loan, notification, subject, body):
        settings = self.policy.get_or_create_defaults(loan.school_id)
        if not settings.email_enabled:
            return 0
        if not self.mailer.send(loan.user.email, subject, body):
            return 0
        self.sink.mark_sent(notification)
        return 1

    def send_weekly_summary(self):
        """Give each school's admins last week's loan, return and overdue counts.

        Only schools with email enabled get a summary. Each school is handled
        in its own transaction; a failure is logged and the next one runs.
        """
        now = self.clock.now()
        since = now - timedelta(days=7)
        sent = 0
        for (school_id,) in db.session.query(School.school_id).order_by(School.school_id).all():
            try:
                sent += self._summarize_school(school_id, since, now)
            except Exception as e:
                logger.error(f"Weekly summary failed for school_id={school_id}: {str(e)}")
        logger.debug(f"Weekly summary completed: {sent} admins notified")
        return sent

    @retry_db_operation()
    def _summarize_school(self, school_id, since, now):
        settings = self.policy.get_or_create_defaults(school_id)
        if not settings.email_enabled:
            return 0
        loans = Loan.query.filter(Loan.school_id == school_id)
        new_loans = loans.filter(Loan.borrowed_at >= since).count()
        returns = loans.filter(Loan.returned_at >= since).count()
        overdue = loans.filter(Loan.status == LoanStatus.ACTIVE, Loan.due_date < now).count()

        title = 'Weekly library summary'
        message = f'This week: {new_loans} new loans, {returns} returns. Overdue books: {overdue}.'
        admins = User.query.filter_by(school_id=school_id, role='admin').order_by(User.user_id).all()
        for admin in admins:
            notification = self.sink.emit(admin.user_id, school_id, NotificationType.WEEKLY_SUMMARY, title, message)
            if self.mailer.send(admin.email, title, message):
                self.sink.mark_sent(notification)
        return len(admins)
