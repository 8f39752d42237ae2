"""Authentication for apprep.

Accounts sign in with email and password and receive a JWT that lasts
JWT_EXPIRE_DAYS (14 by default).
Passwords are hashed with bcrypt; tokens are signed with PyJWT.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Header
from sqlalchemy.orm import Session

from .database.connection import get_db_dependency
from .database.models import User

JWT_SECRET = os.environ.get("JWT_SECRET", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_DAYS = int(os.environ.get("JWT_EXPIRE_DAYS", "14"))

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt ignores (or rejects) anything longer


def password_problem(password: str) -> Optional[str]:
    """Why a new password is unacceptable, or None if it is fine."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
    return None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or an over-long password
        return False


def create_access_token(user_id: str, email: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRE_DAYS)
    return jwt.encode(
        {"user_id": user_id, "email": email, "exp": expire},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def decode_access_token(token: str) -> dict:
    """Decode a token, raising 401 if it is expired or invalid."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def token_response(user: User) -> dict:
    """Body returned by register and login."""
    return {
        "access_token": create_access_token(user.id, user.email),
        "token_type": "bearer",
        "user_id": user.id,
        "email": user.email,
    }


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db_dependency),
) -> User:
    """FastAPI dependency for endpoints that need a signed-in student."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    payload = decode_access_token(token)
    user = db.query(User).filter_by(id=payload.get("user_id")).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Account not found or deactivated")
    return user
