import functools
import logging
import os

import bcrypt
from flask import Blueprint, Flask, current_app, g, jsonify, request, session
from flask_cors import CORS
from flask_session import Session
from werkzeug.exceptions import HTTPException

from clock import SystemClock
from config import Config
from errors import CirculationError, ValidationError
from inventory import InventoryLedger
from loans import LoanManager
from models import User, db
from notifications import DatabaseNotificationSink, LoggingMailer, NotificationCenter
from policy import PolicyConfig
from reservations import ReservationQueue
from scheduler import CirculationScheduler
from tenancy import TenantScope

logger = logging.getLogger(__name__)


class CirculationServices:
    """Wires the circulation components around one clock and one sink."""

    def __init__(self, clock=None, sink=None, mailer=None):
        self.clock = clock or SystemClock()
        self.sink = sink or DatabaseNotificationSink(self.clock)
        self.mailer = mailer or LoggingMailer()
        self.ledger = InventoryLedger()
        self.policy = PolicyConfig()
        self.reservations = ReservationQueue(self.ledger, self.policy, self.sink, self.clock)
        self.loans = LoanManager(self.ledger, self.policy, self.reservations, self.sink, self.mailer, self.clock)
        self.notifications = NotificationCenter(self.clock)


def services():
    return current_app.extensions['circulation']


api = Blueprint('api', __name__, url_prefix='/api')


# Authentication decorator
def login_required(role=None):
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            if 'user_id' not in session:
                logger.error("Unauthorized access: No user session")
                return jsonify({'error': 'Unauthorized access'}), 401
            user = db.session.get(User, session['user_id'])
            if not user:
                logger.error("Unauthorized access: Invalid user")
                return jsonify({'error': 'Unauthorized access'}), 401
            if role and user.role != role:
                logger.error(f"Access denied: Required role {role}, got {user.role}")
                return jsonify({'error': f'{role.capitalize()} access required'}), 403
            g.user = user
            g.scope = TenantScope.of(user)
            return f(*args, **kwargs)
        return wrapped
    return decorator


@api.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True)
    if not data or 'email' not in data or 'password' not in data:
        logger.error("Invalid login payload")
        return jsonify({'error': 'Missing email or password'}), 400
    user = User.query.filter(User.email.ilike(data['email'])).first()
    if not user:
        logger.debug(f"No user found for email (case-insensitive): {data['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401
    if not bcrypt.checkpw(data['password'].encode('utf-8'), user.password.encode('utf-8')):
        logger.debug(f"Password mismatch for user: {data['email']}")
        return jsonify({'error': 'Invalid credentials'}), 401
    session['user_id'] = user.user_id
    logger.debug(f"Session created for user: {user.email}")
    return jsonify({'message': 'Login successful', 'role': user.role, 'name': user.name,
                    'school_id': user.school_id}), 200


@api.route('/logout', methods=['POST'])
def logout():
    session.pop('user_id', None)
    logger.debug("User logged out")
    return jsonify({'message': 'Logout successful'}), 200


# Loans
@api.route('/loans/<int:book_id>', methods=['POST'])
@login_required()
def borrow_book(book_id):
    loan = services().loans.borrow(g.scope, g.user.user_id, book_id)
    return jsonify(loan.to_dict()), 201


@api.route('/loans/<int:loan_id>/return', methods=['POST'])
@login_required()
def return_book(loan_id):
    loan = services().loans.return_loan(g.scope, g.user.user_id, loan_id)
    return jsonify(loan.to_dict()), 200


@api.route('/loans/<int:loan_id>/renew', methods=['POST'])
@login_required()
def renew_loan(loan_id):
    loan = services().loans.renew(g.scope, g.user.user_id, loan_id)
    return jsonify(loan.to_dict()), 200


@api.route('/loans/<int:loan_id>/pay-fine', methods=['POST'])
@login_required(role='admin')
def mark_fine_paid(loan_id):
    loan = services().loans.mark_fine_paid(g.scope, loan_id)
    return jsonify(loan.to_dict()), 200


@api.route('/loans/my', methods=['GET'])
@login_required()
def my_loans():
    loans = services().loans.list_loans(g.scope, g.user.user_id)
    return jsonify([l.to_dict() for l in loans]), 200


@api.route('/loans/my/fines', methods=['GET'])
@login_required()
def my_fines():
    fines = services().loans.unpaid_fines(g.scope, g.user.user_id)
    return jsonify({
        'loans': [l.to_dict() for l in fines['loans']],
        'total_fine': fines['total_fine'],
    }), 200


@api.route('/loans/reading-history', methods=['GET'])
@login_required()
def reading_history():
    history = services().loans.reading_history(g.scope, g.user.user_id)
    return jsonify({
        'stats': history['stats'],
        'monthly': history['monthly'],
        'loans': [l.to_dict() for l in history['loans']],
    }), 200


# Reservations
@api.route('/reservations/<int:book_id>', methods=['POST'])
@login_required()
def reserve_book(book_id):
    reservation = services().reservations.reserve(g.scope, g.user.user_id, book_id)
    return jsonify(reservation.to_dict()), 201


@api.route('/reservations/<int:reservation_id>', methods=['DELETE'])
@login_required()
def cancel_reservation(reservation_id):
    reservation = services().reservations.cancel(g.scope, reservation_id, g.user.user_id)
    return jsonify(reservation.to_dict()), 200


@api.route('/reservations', methods=['GET'])
@login_required()
def my_reservations():
    reservations = services().reservations.list_for_user(g.scope, g.user.user_id)
    return jsonify([r.to_dict() for r in reservations]), 200


@api.route('/reservations/all', methods=['GET'])
@login_required(role='admin')
def all_reservations():
    reservations = services().reservations.list_for_tenant(g.scope)
    return jsonify([r.to_dict() for r in reservations]), 200


@api.route('/reservations/book/<int:book_id>/waiting', methods=['GET'])
@login_required()
def waiting_count(book_id):
    return jsonify({'book_id': book_id, 'waiting': services().reservations.waiting_count(g.scope, book_id)}), 200


# Settings
@api.route('/settings', methods=['GET'])
@login_required()
def get_settings():
    settings = services().policy.read(g.scope)
    return jsonify(settings.to_dict()), 200


@api.route('/settings', methods=['PUT'])
@login_required(role='admin')
def update_settings():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    data.pop('school_id', None)
    settings = services().policy.update(g.scope, data)
    return jsonify(settings.to_dict()), 200


# Notifications
@api.route('/notifications', methods=['GET'])
@login_required()
def list_notifications():
    notifications = services().notifications.list_for_user(g.scope, g.user.user_id)
    return jsonify([n.to_dict() for n in notifications]), 200


@api.route('/notifications/unread-count', methods=['GET'])
@login_required()
def unread_count():
    return jsonify({'count': services().notifications.unread_count(g.scope, g.user.user_id)}), 200


@api.route('/notifications/<int:notification_id>/read', methods=['POST'])
@login_required()
def mark_notification_read(notification_id):
    services().notifications.mark_read(g.scope, notification_id, g.user.user_id)
    return jsonify({'message': 'Notification marked as read'}), 200


@api.route('/notifications/read-all', methods=['POST'])
@login_required()
def mark_all_notifications_read():
    updated = services().notifications.mark_all_read(g.scope, g.user.user_id)
    return jsonify({'updated': updated}), 200


@api.route('/notifications/send', methods=['POST'])
@login_required(role='admin')
def send_notification():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    user_ids = data.get('user_ids')
    if user_ids is not None and (
        not isinstance(user_ids, list) or not all(isinstance(i, int) and not isinstance(i, bool) for i in user_ids)
    ):
        raise ValidationError('user_ids must be a list of user ids')
    sent = services().notifications.broadcast(g.scope, data.get('title'), data.get('message'), user_ids)
    return jsonify({'sent': sent}), 201


@api.route('/notifications/send-reminders', methods=['POST'])
@login_required(role='admin')
def send_reminders():
    results = services().loans.sweep_overdue_notifications(tenant_id=g.scope.tenant_id)
    return jsonify(results), 200


def register_commands(app, circulation):
    sweeps = CirculationScheduler(app, circulation)

    @app.cli.command('init-db')
    def init_db():
        db.create_all()
        logger.info(f"Database tables created: {app.config['SQLALCHEMY_DATABASE_URI']}")

    @app.cli.command('expire-reservations')
    def expire_reservations():
        sweeps.run_expiry_sweep()

    @app.cli.command('send-reminders')
    def send_reminders():
        sweeps.run_overdue_sweep()

    @app.cli.command('weekly-summary')
    def weekly_summary():
        sweeps.run_weekly_summary()


def create_app(config=None, circulation=None):
    app = Flask(__name__)
    app.config.from_object(config or Config())

    # Configure logging
    logging.basicConfig(level=app.config.get('LOG_LEVEL', 'DEBUG'),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])

    try:
        db.init_app(app)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    if app.config.get('SESSION_TYPE'):
        app.config.setdefault('SESSION_SQLALCHEMY', db)
        Session(app)

    circulation = circulation or CirculationServices()
    app.extensions['circulation'] = circulation
    app.register_blueprint(api)
    register_commands(app, circulation)

    @app.before_request
    def log_request():
        logger.debug(f"Incoming request: {request.method} {request.path} {request.get_json(silent=True)}")

    @app.route('/')
    def home():
        return jsonify({"message": "School Library Circulation Backend"})

    @app.errorhandler(CirculationError)
    def handle_circulation_error(error):
        logger.debug(f"Request rejected: {error.code} {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_error(error):
        if isinstance(error, HTTPException):
            return error
        logger.error(f"Unhandled error: {str(error)}")
        return jsonify({'error': 'An unexpected error occurred'}), 500

    if app.config.get('SCHEDULER_ENABLED'):
        scheduler = CirculationScheduler(app, circulation)
        scheduler.start()
        app.extensions['circulation_scheduler'] = scheduler

    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
