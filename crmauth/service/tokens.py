from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from crmauth.config import Settings
from crmauth.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password_reset"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    roles: Tuple[str, ...]
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    token_id: str
    tenant_id: Optional[str] = None


class TokenVerificationError(Exception):
    """Raised when a token is malformed, forged, of the wrong kind or expired."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TokenCodec:
    """Signs and verifies compact HS256 tokens.

    Each token kind is signed with its own key derived from the shared secret, so
    an access token can never be replayed as a refresh or reset token even if the
    ``kind`` claim were rewritten. Expiry is exclusive and checked against the
    injected clock with a fixed skew tolerance:

    * expired iff ``now >= exp + skew``
    * rejected iff ``iat > now + skew`` (minted in the future)

    The codec is pure: it never consults revocation state.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttls: Mapping[TokenKind, timedelta],
        clock_skew: timedelta = timedelta(seconds=30),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self.issuer = issuer
        self.audience = audience
        self.ttls: Dict[TokenKind, timedelta] = dict(ttls)
        self.clock_skew = clock_skew
        self._clock = clock or system_clock
        self._keys = {
            kind: hmac.new(secret.encode(), f"crmauth:{kind.value}".encode(), hashlib.sha256).digest()
            for kind in TokenKind
        }

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttls={
                TokenKind.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
                TokenKind.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
                TokenKind.PASSWORD_RESET: timedelta(minutes=settings.reset_token_ttl_minutes),
            },
            clock_skew=timedelta(seconds=settings.token_clock_skew_seconds),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def issue(
        self,
        subject: str,
        roles: Iterable[str],
        kind: TokenKind,
        ttl: Optional[timedelta] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> str:
        token, _ = self.mint(subject, roles, kind, ttl, tenant_id=tenant_id)
        return token

    def mint(
        self,
        subject: str,
        roles: Iterable[str],
        kind: TokenKind,
        ttl: Optional[timedelta] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> Tuple[str, TokenClaims]:
        """Encode a new token and return it together with the claims it carries."""
        lifetime = ttl if ttl is not None else self.ttls[kind]
        if lifetime <= timedelta(0):
            raise ValueError("token ttl must be positive")
        issued_ts = int(self.now().timestamp())
        expires_ts = issued_ts + int(lifetime.total_seconds())
        claims = TokenClaims(
            subject=subject,
            roles=tuple(roles),
            kind=kind,
            issued_at=datetime.fromtimestamp(issued_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_ts, tz=timezone.utc),
            token_id=uuid.uuid4().hex,
            tenant_id=tenant_id,
        )
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "roles": list(claims.roles),
            "kind": kind.value,
            "tid": tenant_id,
            "iat": issued_ts,
            "exp": expires_ts,
            "jti": claims.token_id,
        }
        return self._encode(payload, kind), claims

    def verify(self, token: str, expected_kind: Optional[TokenKind] = None) -> TokenClaims:
        """Return the claims of a valid token or raise :class:`TokenVerificationError`."""
        # compare_digest refuses non-ASCII str, and base64url never produces it
        if not token or not isinstance(token, str) or not token.isascii():
            raise TokenVerificationError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenVerificationError("malformed") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenVerificationError("malformed") from None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenVerificationError("malformed")
        # Pinning the algorithm rules out "alg: none" and key-confusion tricks
        if header.get("alg") != self.ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            raise TokenVerificationError("algorithm")

        try:
            kind = TokenKind(payload.get("kind"))
        except ValueError:
            raise TokenVerificationError("kind") from None
        if expected_kind is not None and kind is not expected_kind:
            raise TokenVerificationError("kind")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenVerificationError("signature")

        if payload.get("iss") != self.issuer:
            raise TokenVerificationError("issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenVerificationError("audience")

        claims = self._claims_from_payload(payload, kind)
        now = self.now()
        if claims.issued_at > now + self.clock_skew:
            raise TokenVerificationError("not_yet_valid")
        if self.is_expired(claims, now):
            raise TokenVerificationError("expired")
        return claims

    def subject_of(self, token: str, expected_kind: Optional[TokenKind] = None) -> str:
        return self.verify(token, expected_kind).subject

    def is_expired(self, claims: TokenClaims, now: Optional[datetime] = None) -> bool:
        current = now or self.now()
        return current >= claims.expires_at + self.clock_skew

    def _claims_from_payload(self, payload: Dict[str, Any], kind: TokenKind) -> TokenClaims:
        subject = payload.get("sub")
        token_id = payload.get("jti")
        roles = payload.get("roles") or []
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject or not isinstance(token_id, str):
            raise TokenVerificationError("claims")
        if not isinstance(roles, list) or not all(isinstance(role, str) for role in roles):
            raise TokenVerificationError("claims")
        # bool is an int subclass; a literal true/false is not a timestamp
        if not all(isinstance(ts, int) and not isinstance(ts, bool) for ts in (iat, exp)):
            raise TokenVerificationError("claims")
        tenant_id = payload.get("tid")
        try:
            issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise TokenVerificationError("claims") from None
        return TokenClaims(
            subject=subject,
            roles=tuple(roles),
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=token_id,
            tenant_id=tenant_id if isinstance(tenant_id, str) else None,
        )

    def _encode(self, payload: Dict[str, Any], kind: TokenKind) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(self._keys[kind], signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)
