import logging

from sqlalchemy.exc import IntegrityError

from errors import ValidationError
from models import PolicySettings, db
from transactions import retry_db_operation

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    'loan_days': int,
    'max_loans': int,
    'max_renewals': int,
    'fine_per_day': float,
    'max_fine': float,
    'reservation_days': int,
    'max_reservations': int,
    'email_enabled': bool,
}


def _insert_ignoring_conflict(dialect_name):
    if dialect_name == 'postgresql':
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == 'sqlite':
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert


class PolicyConfig:
    def get_or_create_defaults(self, tenant_id):
        """Return the school's settings row, creating the default row if absent.

        Creation is an INSERT ... ON CONFLICT DO NOTHING against the unique
        school_id, so concurrent first reads converge on one row.
        """
        settings = PolicySettings.query.filter_by(school_id=tenant_id).first()
        if settings:
            return settings

        insert = _insert_ignoring_conflict(db.engine.dialect.name)
        if insert is not None:
            db.session.execute(
                insert(PolicySettings)
                .values(school_id=tenant_id)
                .on_conflict_do_nothing(index_elements=['school_id'])
            )
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(PolicySettings(school_id=tenant_id))
            except IntegrityError:
                logger.debug(f"Settings row created concurrently: school_id={tenant_id}")

        logger.debug(f"Default policy settings materialized: school_id={tenant_id}")
        return PolicySettings.query.filter_by(school_id=tenant_id).one()

    @retry_db_operation()
    def read(self, scope):
        return self.get_or_create_defaults(scope.tenant_id)

    @retry_db_operation()
    def update(self, scope, changes):
        settings = self.get_or_create_defaults(scope.tenant_id)
        for key, value in changes.items():
            if key not in EDITABLE_FIELDS:
                raise ValidationError(f'Unknown setting: {key}')
            kind = EDITABLE_FIELDS[key]
            if kind is bool:
                if not isinstance(value, bool):
                    raise ValidationError(f'{key} must be true or false')
            else:
                try:
                    value = kind(value)
                except (TypeError, ValueError):
                    raise ValidationError(f'{key} must be a number')
                if value < 0 or (value == 0 and key not in ('max_renewals', 'fine_per_day', 'max_fine')):
                    raise ValidationError(f'{key} must be positive')
            setattr(settings, key, value)
        logger.debug(f"Policy settings updated: school_id={scope.tenant_id} changes={changes}")
        return settings
