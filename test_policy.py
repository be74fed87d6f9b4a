import threading

import pytest

from errors import ValidationError
from models import PolicySettings, db
from policy import PolicyConfig
from tenancy import TenantScope


def test_defaults_are_materialized_on_first_read(app, other_school):
    settings = PolicyConfig().get_or_create_defaults(other_school.school_id)
    db.session.commit()
    assert (settings.loan_days, settings.max_loans, settings.max_renewals) == (14, 3, 2)
    assert (settings.fine_per_day, settings.max_fine) == (1.0, 50.0)
    assert (settings.reservation_days, settings.max_reservations) == (3, 2)
    assert settings.email_enabled is False


def test_repeated_reads_do_not_duplicate_rows(app, other_school):
    policy = PolicyConfig()
    first = policy.get_or_create_defaults(other_school.school_id)
    db.session.commit()
    second = policy.get_or_create_defaults(other_school.school_id)
    db.session.commit()
    assert first.settings_id == second.settings_id
    assert PolicySettings.query.filter_by(school_id=other_school.school_id).count() == 1


def test_existing_row_is_returned_unchanged(app, school):
    row = PolicySettings.query.filter_by(school_id=school.school_id).one()
    row.max_loans = 7
    db.session.commit()
    assert PolicyConfig().get_or_create_defaults(school.school_id).max_loans == 7


def test_update_changes_known_fields(app, scope):
    settings = PolicyConfig().update(scope, {'max_loans': 5, 'fine_per_day': '0.5', 'email_enabled': True})
    assert settings.max_loans == 5
    assert settings.fine_per_day == 0.5
    assert settings.email_enabled is True


@pytest.mark.parametrize('changes', [
    {'unknown': 1},
    {'loan_days': 0},
    {'max_fine': -1},
    {'max_loans': 'many'},
    {'email_enabled': 'yes'},
    {'scope': 1},
])
def test_update_rejects_invalid_values(app, scope, changes):
    with pytest.raises(ValidationError):
        PolicyConfig().update(scope, changes)


def test_read_is_scoped_to_tenant(app, school, other_school):
    PolicyConfig().update(TenantScope(school.school_id), {'max_loans': 9})
    assert PolicyConfig().read(TenantScope(other_school.school_id)).max_loans == 3


def test_concurrent_first_reads_share_one_row(app, other_school):
    school_id = other_school.school_id
    barrier = threading.Barrier(4)
    settings_ids = []
    errors = []

    def read():
        with app.app_context():
            barrier.wait()
            try:
                settings_ids.append(PolicyConfig().read(TenantScope(school_id)).settings_id)
            except Exception as e:
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=read) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(settings_ids) == 4
    assert len(set(settings_ids)) == 1
    assert PolicySettings.query.filter_by(school_id=school_id).count() == 1
