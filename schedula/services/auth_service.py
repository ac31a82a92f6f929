# Overview: Service-layer operations for auth; password hashing and tenant-scoped user accounts.

"""
Authentication Service with Multi-Tenant Support

MULTI-TENANT: Users belong to exactly one tenant (tenant_id). E-mail
uniqueness is tenant-scoped, so the same person can be a client of two
businesses with separate accounts.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Staff passwords must pass the strength check
- Clients created by public booking get a random, never-disclosed password
- Session tokens managed separately (see session_service.py)
"""

import re

import bcrypt
from sqlalchemy import func

from ..extensions import db
from ..models import Tenant, User
from ..models.auth import VALID_ROLES
from ..validation import is_valid_email
from schedula.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class UserValidationError(ValueError):
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str, *, check_strength: bool = True) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    check_strength=False is only for generated secrets (public booking
    clients), which are random and never typed by a person.
    """
    if check_strength:
        validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Returns True if password matches hash, False otherwise."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


def find_user(tenant_id: int, email: str) -> User | None:
    return (
        db.session.query(User)
        .filter(User.tenant_id == tenant_id, func.lower(User.email) == email.strip().lower())
        .first()
    )


def create_user(
    tenant_id: int,
    email: str,
    name: str,
    password: str,
    role: str,
    *,
    phone: str | None = None,
    commit: bool = True,
) -> User:
    """
    Create a staff or client account in a tenant.

    Raises:
        UserValidationError: bad e-mail, unknown role, duplicate e-mail in tenant
        PasswordValidationError: weak password
    """
    if not is_valid_email(email):
        raise UserValidationError("Invalid email format")
    if role not in VALID_ROLES:
        raise UserValidationError(f"Invalid role '{role}'. Must be one of: {', '.join(sorted(VALID_ROLES))}")
    if not name or not str(name).strip():
        raise UserValidationError("Name is required")
    if find_user(tenant_id, email) is not None:
        raise UserValidationError("A user with this email already exists")

    user = User(
        tenant_id=tenant_id,
        email=email.strip().lower(),
        name=str(name).strip(),
        phone=phone,
        role=role,
        password_hash=hash_password(password),
        is_active=True,
    )
    db.session.add(user)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return user


def authenticate(tenant_slug: str, email: str, password: str) -> User | None:
    """
    Check credentials within a tenant.

    Returns None for unknown tenant, unknown user, inactive user or tenant,
    or wrong password; callers do not learn which.
    """
    tenant = db.session.query(Tenant).filter_by(slug=tenant_slug).first()
    if tenant is None or not tenant.is_active:
        return None
    user = find_user(tenant.id, email)
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    user.last_login_at = utcnow()
    db.session.commit()
    return user
