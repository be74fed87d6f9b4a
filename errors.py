class CirculationError(Exception):
    """Base class for business-rule violations raised by the circulation core."""
    status_code = 400
    code = 'circulation_error'

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class NotFound(CirculationError):
    """Record not found"""
    status_code = 404
    code = 'not_found'


class Forbidden(CirculationError):
    """You do not belong to this school"""
    status_code = 403
    code = 'forbidden'


class ValidationError(CirculationError):
    """Invalid request"""
    status_code = 400
    code = 'invalid'


class PolicyLimitExceeded(CirculationError):
    """Library policy limit reached"""
    status_code = 409
    code = 'policy_limit_exceeded'


class OutOfStock(CirculationError):
    """No copies available"""
    status_code = 409
    code = 'out_of_stock'


class DuplicateLoan(CirculationError):
    """You have already borrowed this book"""
    status_code = 409
    code = 'duplicate_loan'


class DuplicateReservation(CirculationError):
    """You already have an active reservation for this book"""
    status_code = 409
    code = 'duplicate_reservation'


class NotAvailableForReservation(CirculationError):
    """Book is currently available for borrowing"""
    status_code = 409
    code = 'not_available_for_reservation'


class Overdue(CirculationError):
    """Overdue loans cannot be renewed, please return the book first"""
    status_code = 409
    code = 'overdue'


class ReservationConflict(CirculationError):
    """Other members are waiting for this book, it cannot be renewed"""
    status_code = 409
    code = 'reservation_conflict'


class RenewalLimitExceeded(CirculationError):
    """Renewal limit reached"""
    status_code = 409
    code = 'renewal_limit_exceeded'


class TransientStoreError(CirculationError):
    """Database temporarily unavailable, please retry"""
    status_code = 503
    code = 'transient_store_error'
