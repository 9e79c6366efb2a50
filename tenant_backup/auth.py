"""
Authentication utilities: password hashing, bearer tokens and Flask-Login integration.
"""

from datetime import datetime, timezone
from typing import Optional

import jwt
from flask import current_app
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin

from tenant_backup import db
from tenant_backup.models import User


VALID_ROLES = ('admin', 'staff')


def hash_password(password: str) -> str:
    """
    Hash a password using werkzeug's pbkdf2:sha256.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        password_hash: Stored password hash
        password: Plain text password to verify

    Returns:
        True if password matches, False otherwise
    """
    return check_password_hash(password_hash, password)


def validate_password_strength(password: str) -> tuple[bool, str]:
    """
    Validate password meets security requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one digit"

    return True, ""


def issue_token(user: User) -> str:
    """
    Create a signed bearer token for a user.

    The token carries the user id in ``sub`` and expires after TOKEN_TTL.
    """
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(user.id),
        'role': user.role,
        'iat': now,
        'exp': now + current_app.config['TOKEN_TTL'],
    }
    return jwt.encode(
        payload,
        current_app.config['SECRET_KEY'],
        algorithm=current_app.config['JWT_ALGORITHM']
    )


def decode_token(token: str) -> Optional[int]:
    """
    Validate a bearer token.

    Returns:
        The user id it was issued for, or None if the token is invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            current_app.config['SECRET_KEY'],
            algorithms=[current_app.config['JWT_ALGORITHM']]
        )
        return int(payload['sub'])
    except (jwt.PyJWTError, KeyError, ValueError) as e:
        current_app.logger.info(f"Rejected bearer token: {e}")
        return None


def load_user_from_bearer(authorization: Optional[str]):
    """
    Resolve an ``Authorization: Bearer <token>`` header to a logged-in user.

    Returns:
        UserModel for an active user, otherwise None (Flask-Login answers 401)
    """
    if not authorization:
        return None

    scheme, _, token = authorization.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None

    user_id = decode_token(token.strip())
    if user_id is None:
        return None

    user = db.session.get(User, user_id)
    if not user or not user.active:
        return None
    return UserModel(user)


class UserModel(UserMixin):
    """
    Flask-Login user wrapper for the User database model.
    """

    def __init__(self, user: User):
        self.user = user

    def get_id(self):
        """Return user ID as required by Flask-Login."""
        return str(self.user.id)

    @property
    def id(self):
        return self.user.id

    @property
    def username(self):
        return self.user.username

    @property
    def is_active(self):
        return self.user.active

    @property
    def is_admin(self):
        return self.user.is_admin
