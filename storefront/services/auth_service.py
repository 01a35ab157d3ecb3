from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.errors import AuthenticationError, ValidationError
from storefront.models import AdminSession, AdminUser, utcnow

INVALID_CREDENTIALS = "Invalid credentials"


class AuthService:
    """Admin login and bearer-token sessions."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def create_admin(self, username: str, password: str, email: Optional[str] = None) -> AdminUser:
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required", errors={"username": "Required"})
        if not password or len(password) < 8:
            raise ValidationError("Password too short", errors={"password": "Use at least 8 characters"})
        if self.db.query(AdminUser).filter_by(username=username).first() is not None:
            raise ValidationError("Admin user already exists", errors={"username": "Already taken"})

        admin = AdminUser(username=username, email=email, is_active=True)
        admin.set_password(password)
        self.db.add(admin)
        self.db.commit()
        self.logger.info("Admin user %s created", username)
        return admin

    def login(self, username: str, password: str) -> Tuple[AdminUser, AdminSession]:
        if not isinstance(username, str) or not isinstance(password, str):
            raise ValidationError(
                "Username and password are required",
                errors={"username": "Must be a string", "password": "Must be a string"},
            )
        if not username.strip() or not password:
            raise ValidationError("Username and password are required")

        admin = self.db.query(AdminUser).filter_by(username=username.strip()).first()
        # Same message whether the user is unknown, inactive, or the password is wrong
        if admin is None or not admin.is_active or not admin.check_password(password):
            self.logger.warning("Failed admin login", extra={"username": username})
            raise AuthenticationError(INVALID_CREDENTIALS)

        admin_session = AdminSession(
            adminUserID=admin.adminUserID,
            token=secrets.token_hex(32),
            expires_at=utcnow() + timedelta(seconds=self.config.ADMIN_TOKEN_EXPIRY),
        )
        admin.last_login_at = utcnow()
        self.db.add(admin_session)
        purged = self.purge_expired_sessions(commit=False)
        self.db.commit()
        self.logger.info("Admin %s logged in", admin.username, extra={"expired_sessions_purged": purged})
        return admin, admin_session

    def purge_expired_sessions(self, commit: bool = True) -> int:
        """Delete every session past its expiry; returns how many went."""
        purged = (
            self.db.query(AdminSession)
            .filter(AdminSession.expires_at <= utcnow())
            .delete(synchronize_session=False)
        )
        if commit:
            self.db.commit()
        return purged

    def verify_token(self, token: Optional[str]) -> AdminUser:
        if not token:
            raise AuthenticationError("Authentication required")
        admin_session = self.db.query(AdminSession).filter_by(token=token).first()
        if admin_session is None or admin_session.is_expired():
            raise AuthenticationError("Invalid or expired token")
        admin = admin_session.admin_user
        if admin is None or not admin.is_active:
            raise AuthenticationError("Invalid or expired token")
        return admin

    def logout(self, token: str) -> None:
        self.db.query(AdminSession).filter_by(token=token).delete(synchronize_session=False)
        self.db.commit()
