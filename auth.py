from __future__ import annotations

import os
from functools import wraps
from typing import Any, Dict, Optional

import requests
from flask import current_app, g, jsonify, request
from jose import JWTError, jwt

JWT_SECRET = os.getenv("JWT_SECRET", "coop-dev-secret")
AUTH_API_URL = os.getenv("AUTH_API_URL")
AUTH_API_KEY = os.getenv("AUTH_API_KEY")
AUTH_API_TIMEOUT = os.getenv("AUTH_API_TIMEOUT", "5")
ALGORITHM = "HS256"


def issue_token(guardian_id: str, role: str = "user", name: Optional[str] = None, secret: Optional[str] = None) -> str:
    claims: Dict[str, Any] = {"sub": guardian_id, "role": role}
    if name:
        claims["name"] = name
    return jwt.encode(claims, secret or JWT_SECRET, algorithm=ALGORITHM)


def verify_token(token: str, secret: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Verifies the bearer JWT and returns the payload."""
    try:
        payload = jwt.decode(token, secret or JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


def _fetch_remote_role(user_id: str) -> Optional[str]:
    base_url = current_app.config.get("AUTH_API_URL")
    if not base_url:
        return None
    headers = {}
    api_key = current_app.config.get("AUTH_API_KEY")
    if api_key:
        headers["x-api-key"] = api_key
    try:
        timeout_value = float(current_app.config.get("AUTH_API_TIMEOUT", 5))
    except (TypeError, ValueError):
        timeout_value = 5.0
    try:
        response = requests.get(
            f"{base_url.rstrip('/')}/api/user/{user_id}/role",
            headers=headers,
            timeout=timeout_value,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        current_app.logger.warning("Role lookup failed for %s: %s", user_id, exc)
        return None
    if isinstance(payload, dict):
        return payload.get("role")
    return None


def auth_required(f):
    """Decorator to enforce bearer JWT authentication on Flask routes."""

    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing or invalid authorization header"}), 401

        token = auth_header.split(" ", 1)[1]
        payload = verify_token(token, current_app.config.get("JWT_SECRET"))
        if not payload:
            return jsonify({"error": "Invalid or expired token"}), 401

        role = _fetch_remote_role(payload["sub"]) or payload.get("role") or "user"
        g.current_user = {"id": payload["sub"], "role": role, "name": payload.get("name")}
        return f(*args, **kwargs)

    return decorated


def role_required(*roles: str):
    def decorator(f):
        @wraps(f)
        @auth_required
        def decorated(*args, **kwargs):
            if g.current_user["role"] not in roles:
                return jsonify({"error": "Forbidden"}), 403
            return f(*args, **kwargs)

        return decorated

    return decorator


def current_user_id() -> Optional[str]:
    user = g.get("current_user")
    return user["id"] if user else None


def current_role() -> Optional[str]:
    user = g.get("current_user")
    return user["role"] if user else None
