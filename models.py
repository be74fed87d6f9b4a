from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    # Stored naive in UTC; SQLite drops tzinfo anyway.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LoanStatus:
    ACTIVE = 'ACTIVE'
    RETURNED = 'RETURNED'


class ReservationStatus:
    WAITING = 'WAITING'
    READY = 'READY'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'
    FULFILLED = 'FULFILLED'

    ACTIVE = (WAITING, READY)


class NotificationType:
    RESERVATION_READY = 'RESERVATION_READY'
    RESERVATION_EXPIRED = 'RESERVATION_EXPIRED'
    LOAN_DUE_SOON = 'LOAN_DUE_SOON'
    OVERDUE_REMINDER = 'OVERDUE_REMINDER'
    FINE_NOTICE = 'FINE_NOTICE'
    WEEKLY_SUMMARY = 'WEEKLY_SUMMARY'
    GENERAL = 'GENERAL'


class School(db.Model):
    __tablename__ = 'school'
    school_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)


class User(db.Model):
    __tablename__ = 'user'
    user_id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='student')
    school = db.relationship('School', backref='users')


class Book(db.Model):
    __tablename__ = 'book'
    __table_args__ = (
        db.CheckConstraint('available >= 0 AND available <= quantity', name='ck_book_available_range'),
    )
    book_id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(100), nullable=False)
    isbn = db.Column(db.String(13))
    quantity = db.Column(db.Integer, nullable=False, default=1)
    available = db.Column(db.Integer, nullable=False, default=1)


class Loan(db.Model):
    __tablename__ = 'loan'
    loan_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), nullable=False, index=True)
    borrowed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime, nullable=False)
    returned_at = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False, default=LoanStatus.ACTIVE)
    renew_count = db.Column(db.Integer, nullable=False, default=0)
    fine_amount = db.Column(db.Float, nullable=False, default=0.0)
    fine_paid = db.Column(db.Boolean, nullable=False, default=False)
    user = db.relationship('User', backref='loans')
    book = db.relationship('Book', backref='loans')

    __table_args__ = (
        db.Index(
            'uq_loan_active_user_book', 'user_id', 'book_id', unique=True,
            sqlite_where=db.text("status = 'ACTIVE'"),
            postgresql_where=db.text("status = 'ACTIVE'"),
        ),
        db.Index('ix_loan_status_due', 'status', 'due_date'),
    )

    def is_overdue(self, now):
        return self.status == LoanStatus.ACTIVE and now > self.due_date

    def to_dict(self):
        return {
            'loan_id': self.loan_id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'borrowed_at': self.borrowed_at.isoformat(),
            'due_date': self.due_date.isoformat(),
            'returned_at': self.returned_at.isoformat() if self.returned_at else None,
            'status': self.status,
            'renew_count': self.renew_count,
            'fine_amount': float(self.fine_amount),
            'fine_paid': self.fine_paid,
        }


class Reservation(db.Model):
    __tablename__ = 'reservation'
    reservation_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=ReservationStatus.WAITING)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime)
    user = db.relationship('User', backref='reservations')
    book = db.relationship('Book', backref='reservations')

    __table_args__ = (
        db.Index(
            'uq_reservation_active_user_book', 'user_id', 'book_id', unique=True,
            sqlite_where=db.text("status IN ('WAITING', 'READY')"),
            postgresql_where=db.text("status IN ('WAITING', 'READY')"),
        ),
        db.Index('ix_reservation_queue', 'book_id', 'status', 'created_at'),
    )

    def to_dict(self):
        return {
            'reservation_id': self.reservation_id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


class PolicySettings(db.Model):
    __tablename__ = 'policy_settings'
    settings_id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), unique=True, nullable=False)
    loan_days = db.Column(db.Integer, nullable=False, default=14)
    max_loans = db.Column(db.Integer, nullable=False, default=3)
    max_renewals = db.Column(db.Integer, nullable=False, default=2)
    fine_per_day = db.Column(db.Float, nullable=False, default=1.0)
    max_fine = db.Column(db.Float, nullable=False, default=50.0)
    reservation_days = db.Column(db.Integer, nullable=False, default=3)
    max_reservations = db.Column(db.Integer, nullable=False, default=2)
    email_enabled = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            'school_id': self.school_id,
            'loan_days': self.loan_days,
            'max_loans': self.max_loans,
            'max_renewals': self.max_renewals,
            'fine_per_day': self.fine_per_day,
            'max_fine': self.max_fine,
            'reservation_days': self.reservation_days,
            'max_reservations': self.max_reservations,
            'email_enabled': self.email_enabled,
        }


class Notification(db.Model):
    __tablename__ = 'notification'
    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    school_id = db.Column(db.Integer, db.ForeignKey('school.school_id'), nullable=False)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    loan_id = db.Column(db.Integer, db.ForeignKey('loan.loan_id'))
    reservation_id = db.Column(db.Integer, db.ForeignKey('reservation.reservation_id'))
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('ix_notification_user_school', 'user_id', 'school_id', 'is_read'),
    )

    def to_dict(self):
        return {
            'notification_id': self.notification_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat(),
        }
