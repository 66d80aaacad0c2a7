# auth.py
import logging
import sqlite3

import bcrypt

from db import get_conn
from errors import NotFound, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("donor", "ngo", "farmer", "volunteer", "admin")
RECIPIENT_ROLES = ("ngo", "farmer")


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode(), bcrypt.gensalt())
    return hashed.decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def register_user(name, email, password, role, phone=None, organization=None,
                  lat=None, lng=None, max_distance_km=None):
    """Returns the new user id, or None when the email is already registered."""
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    email = email.strip().lower()
    conn = get_conn()
    cur = conn.cursor()
    pw_hash = hash_password(password)
    try:
        cur.execute("""
            INSERT INTO users (name, email, password_hash, phone, role, organization, lat, lng, max_distance_km)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (name, email, pw_hash, phone, role, organization, lat, lng, max_distance_km))
        logger.info("Registered %s user %s", role, email)
        return cur.lastrowid
    except sqlite3.IntegrityError:
        return None
    finally:
        conn.close()


def authenticate(email, password):
    user = get_user_by_email(email)
    if user and verify_password(password, user["password_hash"]):
        return user
    return None


def get_user_by_email(email, conn=None):
    return _get_user("SELECT * FROM users WHERE email = ?", (email.strip().lower(),), conn)


def get_user_by_id(uid, conn=None):
    return _get_user("SELECT * FROM users WHERE id = ?", (uid,), conn)


def _get_user(sql, params, conn=None):
    own = conn is None
    conn = conn or get_conn()
    try:
        row = conn.execute(sql, params).fetchone()
        return dict(row) if row else None
    finally:
        if own:
            conn.close()


def require_role(uid, roles, conn=None):
    """Fetch a user and check their role. Returns the user row as a dict."""
    if isinstance(roles, str):
        roles = (roles,)
    user = get_user_by_id(uid, conn)
    if user is None:
        raise NotFound(f"User {uid} not found")
    if user["role"] not in roles:
        raise PermissionDenied(f"{user['role']} users cannot do this")
    return user


def public_profile(user):
    """The fields other participants may see."""
    if user is None:
        return None
    return {
        "name": user["name"],
        "email": user["email"],
        "phone": user.get("phone"),
        "role": user["role"],
        "organization": user.get("organization"),
    }
