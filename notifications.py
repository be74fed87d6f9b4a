import logging
from datetime import timedelta

from sqlalchemy import delete, update

from errors import NotFound, ValidationError
from models import Notification, NotificationType, User, db
from transactions import retry_db_operation

logger = logging.getLogger(__name__)


class NotificationSink:
    """Where the circulation core reports events for a member.

    Delivery is at-least-once from the core's point of view; consumers poll.
    """

    def emit(self, user_id, tenant_id, type, title, message, loan_id=None, reservation_id=None):
        raise NotImplementedError

    def already_emitted(self, type, since, loan_id=None, reservation_id=None):
        raise NotImplementedError

    def mark_sent(self, notification):
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Writes notifications into the caller's open transaction."""

    def __init__(self, clock):
        self.clock = clock

    def emit(self, user_id, tenant_id, type, title, message, loan_id=None, reservation_id=None):
        notification = Notification(
            user_id=user_id,
            school_id=tenant_id,
            type=type,
            title=title,
            message=message,
            loan_id=loan_id,
            reservation_id=reservation_id,
            created_at=self.clock.now(),
        )
        db.session.add(notification)
        db.session.flush()
        logger.debug(f"Notification {type} queued for user_id={user_id}")
        return notification

    def already_emitted(self, type, since, loan_id=None, reservation_id=None):
        query = Notification.query.filter(
            Notification.type == type,
            Notification.created_at >= since,
        )
        if loan_id is not None:
            query = query.filter(Notification.loan_id == loan_id)
        if reservation_id is not None:
            query = query.filter(Notification.reservation_id == reservation_id)
        return db.session.query(query.exists()).scalar()

    def mark_sent(self, notification):
        notification.sent_at = self.clock.now()


class Mailer:
    def send(self, to, subject, body):
        """Deliver one message. Returns True when the message was handed off."""
        raise NotImplementedError


class LoggingMailer(Mailer):
    """Default mailer: SMTP delivery lives outside this service."""

    def send(self, to, subject, body):
        logger.debug(f"Email not delivered (no transport configured): to={to} subject={subject}")
        return False


class NotificationCenter:
    def __init__(self, clock):
        self.clock = clock

    def list_for_user(self, scope, user_id, limit=50):
        return (
            Notification.query
            .filter_by(user_id=user_id, school_id=scope.tenant_id)
            .order_by(Notification.created_at.desc(), Notification.notification_id.desc())
            .limit(limit)
            .all()
        )

    def unread_count(self, scope, user_id):
        return Notification.query.filter_by(
            user_id=user_id, school_id=scope.tenant_id, is_read=False
        ).count()

    @retry_db_operation()
    def mark_read(self, scope, notification_id, user_id):
        result = db.session.execute(
            update(Notification)
            .where(
                Notification.notification_id == notification_id,
                Notification.user_id == user_id,
                Notification.school_id == scope.tenant_id,
            )
            .values(is_read=True)
        )
        if result.rowcount == 0:
            raise NotFound('Notification not found')

    @retry_db_operation()
    def mark_all_read(self, scope, user_id):
        result = db.session.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.school_id == scope.tenant_id,
                Notification.is_read.is_(False),
            )
            .values(is_read=True)
        )
        return result.rowcount

    @retry_db_operation()
    def purge_read(self, older_than_days=30):
        cutoff = self.clock.now() - timedelta(days=older_than_days)
        result = db.session.execute(
            delete(Notification).where(
                Notification.is_read.is_(True),
                Notification.created_at < cutoff,
            )
        )
        if result.rowcount:
            logger.debug(f"Purged {result.rowcount} old notifications")
        return result.rowcount

    @retry_db_operation()
    def broadcast(self, scope, title, message, user_ids=None):
        """Post a GENERAL notification to the listed members, or to every member of the school."""
        if not title or not message:
            raise ValidationError('Title and message are required')
        if user_ids:
            recipients = [scope.member(user_id).user_id for user_id in dict.fromkeys(user_ids)]
        else:
            recipients = [
                row.user_id for row in db.session.query(User.user_id)
                .filter(User.school_id == scope.tenant_id)
                .order_by(User.user_id)
            ]
        now = self.clock.now()
        db.session.add_all([
            Notification(
                user_id=user_id,
                school_id=scope.tenant_id,
                type=NotificationType.GENERAL,
                title=title,
                message=message,
                created_at=now,
            )
            for user_id in recipients
        ])
        logger.debug(f"General notification sent to {len(recipients)} members of school_id={scope.tenant_id}")
        return len(recipients)
