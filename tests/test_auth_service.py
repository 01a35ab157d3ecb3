from datetime import timedelta

import pytest

from storefront.errors import AuthenticationError, ValidationError
from storefront.models import AdminSession, utcnow
from storefront.services.auth_service import INVALID_CREDENTIALS, AuthService


@pytest.fixture
def auth(db_session):
    return AuthService(db_session)


def test_login_issues_session_with_expiry(db_session, auth, admin_user):
    admin, admin_session = auth.login("admin", "s3cret-pass")

    assert admin.adminUserID == admin_user.adminUserID
    assert len(admin_session.token) == 64
    assert admin_session.is_expired() is False
    assert auth.verify_token(admin_session.token).username == "admin"


@pytest.mark.parametrize(
    "username, password",
    [(123, "s3cret-pass"), ("admin", ["s3cret-pass"]), (None, None), ("   ", "s3cret-pass")],
)
def test_login_rejects_malformed_credentials(auth, admin_user, username, password):
    with pytest.raises(ValidationError):
        auth.login(username, password)


def test_login_failure_message_is_generic(auth, admin_user):
    with pytest.raises(AuthenticationError) as exc_info:
        auth.login("admin", "wrong-password")
    assert exc_info.value.message == INVALID_CREDENTIALS


def test_login_purges_expired_sessions(db_session, auth, admin_user):
    stale = AdminSession(
        adminUserID=admin_user.adminUserID,
        token="stale-token",
        expires_at=utcnow() - timedelta(minutes=1),
    )
    db_session.add(stale)
    db_session.commit()
    _, fresh = auth.login("admin", "s3cret-pass")

    tokens = {row.token for row in db_session.query(AdminSession).all()}
    assert tokens == {fresh.token}


def test_purge_keeps_live_sessions(db_session, auth, admin_user):
    _, live = auth.login("admin", "s3cret-pass")
    db_session.add(
        AdminSession(
            adminUserID=admin_user.adminUserID,
            token="expired",
            expires_at=utcnow() - timedelta(seconds=5),
        )
    )
    db_session.commit()

    assert auth.purge_expired_sessions() == 1
    assert db_session.query(AdminSession).filter_by(token=live.token).count() == 1


def test_expired_token_is_rejected(db_session, auth, admin_user):
    _, admin_session = auth.login("admin", "s3cret-pass")
    admin_session.expires_at = utcnow() - timedelta(seconds=1)
    db_session.commit()

    with pytest.raises(AuthenticationError):
        auth.verify_token(admin_session.token)
