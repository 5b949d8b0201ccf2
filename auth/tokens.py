"""
auth/tokens.py -- Token issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Two token types share one process-wide
       SECRET_KEY but never one signing key: each type signs with a key
       derived as HMAC-SHA256(SECRET_KEY, scope). Tokens also carry a
       type-specific audience. An access token therefore fails refresh
       verification on the signature alone, and again on the audience.

       Access tokens are short-lived and sent on every request; refresh
       tokens are long-lived and can mint access tokens, so a leaked access
       token must never be replayable as a refresh token.

       Every token carries a random jti. Two refresh tokens issued for the
       same user within the same second would otherwise be byte-identical,
       and the per-user refresh list must not hold duplicates.

  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes
       from Settings.bcrypt_rounds. Bcrypt silently truncates input past 72
       bytes; the API layer caps password length well below that.

  Capabilities: TokenSigner and HashVerifier are Protocols. TokenService and
       Authenticator depend only on them, so an alternate algorithm (RS256,
       argon2) is a new class, not a change to control flow.

Layer rule: no imports from api/. Settings are passed in by the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidToken, MalformedHeader

ISSUER = "admin-dashboard-rbac"
ACCESS_AUDIENCE = "admin-dashboard-users"
REFRESH_AUDIENCE = "admin-dashboard-refresh"

_ACCESS_SCOPE = "access"
_REFRESH_SCOPE = "refresh"
_BEARER_PREFIX = "Bearer "


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------


class TokenSigner(Protocol):
    """Signs claim sets and verifies signed tokens.

    decode() must raise InvalidToken on ANY failure (bad signature, wrong
    audience or issuer, expiry, garbage input) so callers cannot tell the
    cases apart.
    """

    def encode(self, claims: dict, key: str) -> str: ...

    def decode(self, token: str, key: str, *, audience: str, issuer: str) -> dict: ...


class HashVerifier(Protocol):
    def hash(self, plain: str) -> str: ...

    def verify(self, plain: str, hashed: str) -> bool: ...


# ---------------------------------------------------------------------------
# Default implementations
# ---------------------------------------------------------------------------


class JoseSigner:
    """HS256 JWT signer backed by python-jose."""

    algorithm = "HS256"

    def encode(self, claims: dict, key: str) -> str:
        return jwt.encode(claims, key, algorithm=self.algorithm)

    def decode(self, token: str, key: str, *, audience: str, issuer: str) -> dict:
        try:
            return jwt.decode(token, key, algorithms=[self.algorithm], audience=audience, issuer=issuer)
        except JWTError as exc:
            raise InvalidToken() from exc


class BcryptHasher:
    """Adaptive password hashing with a configurable bcrypt cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches. Malformed hashes never match."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except Exception:
            return False


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


def _derive_key(secret_key: str, scope: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), scope.encode("utf-8"), hashlib.sha256).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues and verifies access/refresh bearer tokens.

    Usage:
        tokens = TokenService(settings.secret_key, access_ttl=900, refresh_ttl=604800)
        access = tokens.issue_access({"sub": user.id, "email": user.email, "role": user.role})
        claims = tokens.verify_access(access)

    The signing secret is held here and never embedded in a token. The
    `now` hook exists so tests can mint tokens that are already expired.
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 3600,
        signer: TokenSigner | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._access_key = _derive_key(secret_key, _ACCESS_SCOPE)
        self._refresh_key = _derive_key(secret_key, _REFRESH_SCOPE)
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._signer: TokenSigner = signer or JoseSigner()
        self._now = now

    def issue_access(self, claims: dict) -> str:
        return self._issue(claims, self._access_key, ACCESS_AUDIENCE, self.access_ttl)

    def issue_refresh(self, claims: dict) -> str:
        return self._issue(claims, self._refresh_key, REFRESH_AUDIENCE, self.refresh_ttl)

    def verify_access(self, token: str) -> dict:
        return self._verify(token, self._access_key, ACCESS_AUDIENCE)

    def verify_refresh(self, token: str) -> dict:
        return self._verify(token, self._refresh_key, REFRESH_AUDIENCE)

    def _issue(self, claims: dict, key: str, audience: str, ttl: int) -> str:
        if not claims.get("sub"):
            raise ValueError("Token claims must include a user identifier ('sub').")
        now = self._now()
        payload = {
            **claims,
            "sub": str(claims["sub"]),
            "iss": ISSUER,
            "aud": audience,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
            "jti": uuid.uuid4().hex,
        }
        return self._signer.encode(payload, key)

    def _verify(self, token: str, key: str, audience: str) -> dict:
        if not token or not isinstance(token, str):
            raise InvalidToken()
        claims = self._signer.decode(token, key, audience=audience, issuer=ISSUER)
        if not claims.get("sub"):
            raise InvalidToken()
        return claims

    @staticmethod
    def extract_bearer(header_value: str | None) -> str:
        """Return the token from an Authorization header value.

        The prefix match is exact and case-sensitive ("Bearer "), matching
        what clients of this API are documented to send.
        """
        if not header_value or not header_value.startswith(_BEARER_PREFIX):
            raise MalformedHeader()
        token = header_value[len(_BEARER_PREFIX) :].strip()
        if not token:
            raise MalformedHeader()
        return token


def claims_for(user) -> dict:
    """Claim set shared by both token types for a given user."""
    return {"sub": user.id, "email": user.email, "role": user.role}
