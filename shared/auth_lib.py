import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, Optional

from flask import current_app, g, jsonify, request
from jose import JWTError, jwt

from queue_errors import UnauthenticatedError

# Constants
JWT_SECRET = os.getenv("JWT_SECRET", "fallback-secret-key")
ALGORITHM = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
VALID_ROLES = ("doctor", "admin")
ADMIN_ROLE = "admin"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    role: str
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _secret(secret: Optional[str]) -> str:
    if secret:
        return secret
    try:
        return current_app.config.get("JWT_SECRET") or JWT_SECRET
    except RuntimeError:
        # outside an application context
        return JWT_SECRET


def issue_token(
    user_id: str,
    role: str,
    name: Optional[str] = None,
    secret: Optional[str] = None,
    expires_in: Optional[timedelta] = None,
) -> str:
    """Signs a bearer token for ``user_id``; used by tooling and tests."""
    if not user_id or not role:
        raise ValueError("user_id and role are required")
    expires_at = datetime.now(timezone.utc) + (expires_in or timedelta(days=JWT_EXPIRES_DAYS))
    claims: Dict[str, Any] = {"userId": str(user_id), "role": role, "exp": expires_at}
    if name:
        claims["name"] = name
    return jwt.encode(claims, _secret(secret), algorithm=ALGORITHM)


def verify_token(token: str, secret: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Verifies the JWT and returns the payload."""
    try:
        return jwt.decode(token, _secret(secret), algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        return None


def resolve_identity(auth_header: Optional[str], secret: Optional[str] = None) -> Identity:
    if not auth_header or not auth_header.startswith("Bearer "):
        raise UnauthenticatedError("Missing or invalid authorization header")
    token = auth_header[len("Bearer "):].strip()
    payload = verify_token(token, secret) if token else None
    if not payload:
        raise UnauthenticatedError("Invalid or expired token")
    user_id = payload.get("userId")
    role = payload.get("role")
    if not user_id or role not in VALID_ROLES:
        raise UnauthenticatedError("Invalid token claims")
    return Identity(id=str(user_id), role=role, name=payload.get("name"))


def auth_required(f):
    """Decorator to enforce bearer authentication on Flask routes."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            identity = resolve_identity(request.headers.get("Authorization"))
        except UnauthenticatedError as exc:
            return jsonify(exc.to_dict()), exc.status_code
        g.identity = identity
        return f(*args, **kwargs)
    return decorated


def current_identity() -> Optional[Identity]:
    return getattr(g, "identity", None)
