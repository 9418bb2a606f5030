from __future__ import annotations

import base64
import json
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidKey, InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

ACCESS_TOKEN_TTL_S = 24 * 3600
REFRESH_TOKEN_TTL_S = 30 * 24 * 3600
PBKDF2_ITERATIONS = 240_000
PBKDF2_KEY_BYTES = 32
MIN_PASSWORD_CHARS = 8
MAX_PASSWORD_CHARS = 128

_HEADER = {"alg": "HS256", "typ": "JWT"}
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TokenError(ValueError):
    """A bearer token that is malformed, forged or expired."""


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    kind: str
    issued_at: int
    expires_at: int
    email: str | None = None


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _mac(secret: str, signing_input: bytes) -> crypto_hmac.HMAC:
    mac = crypto_hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    mac.update(signing_input)
    return mac


def _sign(secret: str, signing_input: bytes) -> str:
    return _b64encode(_mac(secret, signing_input).finalize())


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(), length=PBKDF2_KEY_BYTES, salt=salt, iterations=iterations
    )


def issue_token(
    secret: str,
    user_id: str,
    *,
    kind: str,
    ttl_s: int,
    email: str | None = None,
    now: float | None = None,
) -> str:
    issued = int(now if now is not None else time.time())
    claims: dict[str, Any] = {"sub": user_id, "kind": kind, "iat": issued, "exp": issued + ttl_s}
    if email:
        claims["email"] = email
    header = _b64encode(json.dumps(_HEADER, separators=(",", ":")).encode("utf-8"))
    payload = _b64encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header}.{payload}".encode("ascii")
    return f"{header}.{payload}.{_sign(secret, signing_input)}"


def verify_token(
    secret: str, token: str, *, kind: str, now: float | None = None
) -> TokenClaims:
    parts = token.split(".")
    if len(parts) != 3 or not token.isascii():
        raise TokenError("malformed token")
    header, payload, signature = parts
    try:
        _mac(secret, f"{header}.{payload}".encode("ascii")).verify(_b64decode(signature))
    except (InvalidSignature, ValueError) as exc:
        raise TokenError("invalid signature") from exc
    try:
        claims = json.loads(_b64decode(payload))
    except (ValueError, UnicodeDecodeError) as exc:
        raise TokenError("malformed token") from exc
    if not isinstance(claims, dict) or not claims.get("sub"):
        raise TokenError("invalid token payload")
    if claims.get("kind") != kind:
        raise TokenError("wrong token kind")
    current = int(now if now is not None else time.time())
    try:
        expires_at = int(claims["exp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenError("invalid token payload") from exc
    if current >= expires_at:
        raise TokenError("token expired")
    return TokenClaims(
        user_id=str(claims["sub"]),
        kind=kind,
        issued_at=int(claims.get("iat") or 0),
        expires_at=expires_at,
        email=claims.get("email"),
    )


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = _kdf(salt, iterations).derive(password.encode("utf-8"))
    return f"pbkdf2_sha256${iterations}${_b64encode(salt)}${_b64encode(digest)}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, digest = stored.split("$")
        rounds = int(iterations)
        salt_bytes = _b64decode(salt)
        expected = _b64decode(digest)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256" or rounds <= 0:
        return False
    try:
        _kdf(salt_bytes, rounds).verify(password.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


def normalize_email(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    email = value.strip().lower()
    if not _EMAIL_RE.match(email):
        return None
    return email


def password_problem(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return "password is required"
    if len(value) < MIN_PASSWORD_CHARS:
        return f"password must be at least {MIN_PASSWORD_CHARS} characters"
    if len(value) > MAX_PASSWORD_CHARS:
        return f"password must be at most {MAX_PASSWORD_CHARS} characters"
    return None


def bearer_token(header_value: str | None) -> str | None:
    if not header_value or not header_value.startswith("Bearer "):
        return None
    token = header_value[len("Bearer ") :].strip()
    return token or None
