from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any

from rental_management.services.errors import AuthenticationRequired, AuthorizationError


SESSION_TTL_SECONDS = 60 * 60 * 12
ADMIN_ROLE = "Admin"
USER_ROLE = "User"
KNOWN_ROLES = {ADMIN_ROLE, USER_ROLE}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    return role if role in KNOWN_ROLES else USER_ROLE


def create_session(payload: dict[str, Any], ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    session_payload = dict(payload)
    session_payload["role"] = _normalize_role(session_payload.get("role"))
    session_payload["providerIDs"] = [str(pid) for pid in session_payload.get("providerIDs") or []]
    session_payload["expiresAt"] = time.time() + ttl_seconds
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    return f"{encoded}.{_b64encode(_sign(encoded))}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    try:
        expires_at = float(decoded_session.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if time.time() >= expires_at:
        return None
    return decoded_session


def require_session(token: str | None) -> dict[str, Any]:
    session = get_session(token)
    if not session:
        raise AuthenticationRequired("Not logged in.")
    return session


def session_user_id(session: dict[str, Any] | None) -> str | None:
    if not session:
        return None
    value = str(session.get("userID") or "").strip()
    return value or None


def require_provider_access(session: dict[str, Any] | None, provider_id: str) -> None:
    if not session:
        raise AuthenticationRequired("Not logged in.")
    if str(session.get("role") or "").strip() == ADMIN_ROLE:
        return
    members_of = {str(pid) for pid in session.get("providerIDs") or []}
    if str(provider_id) not in members_of:
        raise AuthorizationError("Forbidden: provider membership required.")


def verify_service_key(supplied: str | None) -> None:
    expected = (os.environ.get("HOLD_SWEEPER_SERVICE_KEY") or "").strip()
    candidate = (supplied or "").strip()
    if not candidate:
        raise AuthenticationRequired("Missing service credentials.")
    if not expected or not hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8")):
        raise AuthorizationError("Service identity required.")
