from dataclasses import dataclass

from errors import Forbidden, NotFound
from models import User, db


@dataclass(frozen=True)
class TenantScope:
    """Handle naming the school every circulation operation runs against.

    Tenant-bound operations take it as their first argument so no query can
    be issued without a school filter.
    """
    tenant_id: int

    @classmethod
    def of(cls, user):
        return cls(tenant_id=user.school_id)

    def member(self, user_id):
        """Return the user if it belongs to this school.

        Unknown users raise NotFound; users of another school raise Forbidden.
        """
        user = db.session.get(User, user_id)
        if not user:
            raise NotFound('User not found')
        if user.school_id != self.tenant_id:
            raise Forbidden('You do not belong to this school')
        return user
