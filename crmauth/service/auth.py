from __future__ import annotations

import asyncio
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from crmauth.config import Settings
from crmauth.logging import fingerprint, get_logger
from crmauth.service.audit import ENTITY_AUTH, ENTITY_USER, AuditActivity, AuditLog
from crmauth.service.errors import AuthError, AuthResult
from crmauth.service.login_attempts import LoginAttemptTracker
from crmauth.service.revocation import RevocationRegistry
from crmauth.service.tokens import (
    TokenClaims,
    TokenCodec,
    TokenKind,
    TokenVerificationError,
)
from crmauth.storage.models import Principal, PrincipalSummary

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_principal(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        roles: Sequence[str] = ("USER",),
        tenant_id: str = "public",
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Principal: ...

    def find_by_login_id(self, login_id: str) -> Optional[Principal]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]: ...

    def consume_reset_ticket(
        self, principal_id: str, token: str, now: datetime
    ) -> Optional[Principal]: ...


class ResetDelivery(Protocol):
    def send_password_reset(self, principal: PrincipalSummary, token: str) -> None: ...


class LoggingResetDelivery:
    """Default delivery that only records that a reset link is ready to send."""

    def send_password_reset(self, principal: PrincipalSummary, token: str) -> None:
        logger.info(
            "password_reset_ready",
            principal_id=principal.id,
            email_hash=fingerprint(principal.email.lower()),
        )


@dataclass(frozen=True)
class IssuedTokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    principal: PrincipalSummary
    token_type: str = "bearer"


def normalize_roles(roles: Optional[Iterable[str]]) -> Tuple[str, ...]:
    normalized: list[str] = []
    for role in roles or ():
        name = role.strip().upper()
        if name and name not in normalized:
            normalized.append(name)
    return tuple(normalized) or ("USER",)


class AuthService:
    """Login, token rotation, logout and password flows.

    Every public operation takes its caller context explicitly (a login source,
    a token, or verified claims) and reports expected failures as an
    :class:`AuthResult` rather than raising. Collaborator failures (store,
    Redis) propagate to the caller unchanged.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLog,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        attempts: Optional[LoginAttemptTracker] = None,
        revocations: Optional[RevocationRegistry] = None,
        delivery: Optional[ResetDelivery] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.audit = audit
        self.settings = settings
        self.codec = codec or TokenCodec.from_settings(settings)
        self.attempts = attempts or LoginAttemptTracker(
            max_attempts=settings.login_max_attempts,
            window=timedelta(minutes=settings.login_lockout_minutes),
            fail_open=settings.login_attempts_fail_open,
            clock=self.codec.now,
        )
        self.revocations = revocations or RevocationRegistry(
            default_retention=timedelta(minutes=settings.refresh_token_ttl_minutes),
            grace=self.codec.clock_skew,
            clock=self.codec.now,
        )
        self.delivery: ResetDelivery = delivery or LoggingResetDelivery()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against on paths with no real hash so failures cost the same as successes
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger
        self._last_cleanup = self._now()
        self._cleanup_lock = threading.Lock()

    def _now(self) -> datetime:
        return self.codec.now()

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Prune elapsed attempt windows and dead revocations at most once per interval."""
        now = self._now()
        with self._cleanup_lock:
            if now - self._last_cleanup < timedelta(minutes=interval_minutes):
                return 0
            self._last_cleanup = now
        cleaned = self.attempts.cleanup_expired() + self.revocations.prune_expired()
        if cleaned:
            self.logger.debug("auth_state_cleanup", cleaned=cleaned)
        return cleaned

    # ------------------------------------------------------------------
    # password hashing

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerificationError:
            return False
        except InvalidHash:
            self.logger.warning("password_hash_invalid")
            return False

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hash_password, password)

    async def verify_password(self, stored_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._check_password, stored_hash, password)

    async def _equalize_timing(self, password: str) -> None:
        await self.verify_password(self._dummy_hash, password)

    # ------------------------------------------------------------------
    # login

    async def authenticate(
        self, login_id: str, password: str, *, source: str
    ) -> AuthResult[IssuedTokenPair]:
        """Verify credentials for ``login_id`` arriving from ``source``.

        A locked-out source is refused before the credential store is touched,
        so a blocked correct password and a blocked wrong one look identical.
        """
        self.maybe_cleanup()
        try:
            if await self.attempts.is_blocked(source):
                await self._equalize_timing(password)
                self.logger.warning("login_blocked", source_hash=fingerprint(source))
                return AuthResult.failure(AuthError.TOO_MANY_ATTEMPTS)

            principal = self.store.find_by_login_id(login_id)
            if principal is None:
                await self._equalize_timing(password)
                return await self._login_failed(source, reason="unknown_principal")
            if not await self.verify_password(principal.password_hash, password):
                return await self._login_failed(
                    source, reason="bad_password", principal_id=principal.id
                )
            if not principal.is_active:
                return await self._login_failed(
                    source, reason="disabled", principal_id=principal.id
                )

            await self.attempts.record_success(source)
            principal = self.store.update_principal(principal.id, last_login_at=self._now()) or principal
            pair = self._issue_pair(principal)
            self.audit.record_user_activity(
                principal.id, AuditActivity.LOGIN.value, ENTITY_USER, principal.id
            )
            self.logger.info("login_succeeded", principal_id=principal.id)
            return AuthResult.success(pair)
        except Exception as exc:
            self.logger.error(
                "login_error",
                source_hash=fingerprint(source),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._record_login_error()
            raise

    async def _login_failed(
        self, source: str, *, reason: str, principal_id: Optional[str] = None
    ) -> AuthResult[IssuedTokenPair]:
        await self.attempts.record_failure(source)
        self.audit.record_system_activity(AuditActivity.LOGIN_FAILED.value, ENTITY_AUTH, None)
        self.logger.warning(
            "login_failed",
            reason=reason,
            principal_id=principal_id,
            source_hash=fingerprint(source),
        )
        return AuthResult.failure(AuthError.INVALID_CREDENTIALS)

    def _record_login_error(self) -> None:
        try:
            self.audit.record_system_activity(AuditActivity.LOGIN_ERROR.value, ENTITY_AUTH, None)
        except Exception as exc:
            self.logger.error("audit_record_failed", activity="LOGIN_ERROR", error=str(exc))

    # ------------------------------------------------------------------
    # tokens

    def _issue_pair(self, principal: Principal) -> IssuedTokenPair:
        access_token, access_claims = self.codec.mint(
            principal.id, principal.roles, TokenKind.ACCESS, tenant_id=principal.tenant_id
        )
        refresh_token, refresh_claims = self.codec.mint(
            principal.id, principal.roles, TokenKind.REFRESH, tenant_id=principal.tenant_id
        )
        return IssuedTokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
            principal=principal.summary(),
        )

    @staticmethod
    def _predates_credentials(claims: TokenClaims, principal: Principal) -> bool:
        changed = principal.credentials_changed_at
        # iat has whole-second precision
        return changed is not None and claims.issued_at < changed.replace(microsecond=0)

    async def _authorize(self, access_token: str) -> AuthResult[Tuple[TokenClaims, Principal]]:
        try:
            claims = self.codec.verify(access_token, TokenKind.ACCESS)
        except TokenVerificationError as exc:
            self.logger.debug("access_token_rejected", reason=exc.reason)
            return AuthResult.failure(AuthError.INVALID_TOKEN)
        if await self.revocations.is_revoked(access_token):
            self.logger.info("access_token_revoked_presented", principal_id=claims.subject)
            return AuthResult.failure(AuthError.INVALID_TOKEN)
        principal = self.store.get_principal(claims.subject)
        if principal is None:
            return AuthResult.failure(AuthError.USER_NOT_FOUND)
        if not principal.is_active or self._predates_credentials(claims, principal):
            return AuthResult.failure(AuthError.INVALID_TOKEN)
        return AuthResult.success((claims, principal))

    async def authorize(self, access_token: str) -> AuthResult[TokenClaims]:
        """Verified claims for a bearer access token, for explicit use by callers."""
        result = await self._authorize(access_token)
        if not result.ok:
            return AuthResult.failure(result.error)
        claims, _ = result.value
        return AuthResult.success(claims)

    async def get_user_info(self, access_token: str) -> AuthResult[PrincipalSummary]:
        result = await self._authorize(access_token)
        if not result.ok:
            return AuthResult.failure(result.error)
        _, principal = result.value
        return AuthResult.success(principal.summary())

    async def refresh(self, refresh_token: str) -> AuthResult[IssuedTokenPair]:
        """Exchange a refresh token for a new pair, revoking the presented token.

        The revoke step is an atomic test-and-set, so of several concurrent
        calls presenting the same token at most one gets a new pair.
        """
        try:
            claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except TokenVerificationError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.reason)
            return AuthResult.failure(AuthError.TOKEN_REFRESH)
        if await self.revocations.is_revoked(refresh_token):
            self.logger.warning("refresh_token_replayed", principal_id=claims.subject)
            return AuthResult.failure(AuthError.TOKEN_REFRESH)
        if not await self.revocations.revoke(refresh_token, claims.expires_at):
            self.logger.warning(
                "refresh_token_replayed", principal_id=claims.subject, concurrent=True
            )
            return AuthResult.failure(AuthError.TOKEN_REFRESH)

        principal = self.store.get_principal(claims.subject)
        if principal is None or not principal.is_active:
            self.logger.warning("refresh_principal_unavailable", principal_id=claims.subject)
            return AuthResult.failure(AuthError.TOKEN_REFRESH)
        if self._predates_credentials(claims, principal):
            return AuthResult.failure(AuthError.TOKEN_REFRESH)

        pair = self._issue_pair(principal)
        self.audit.record_user_activity(
            principal.id, AuditActivity.TOKEN_REFRESH.value, ENTITY_AUTH, principal.id
        )
        return AuthResult.success(pair)

    async def logout(self, token: str) -> None:
        """Revoke an access or refresh token.

        Tokens that do not verify are treated as already logged out, and a
        repeated logout is a no-op, so callers learn nothing about token state here.
        """
        try:
            claims = self.codec.verify(token)
        except TokenVerificationError:
            self.logger.debug("logout_ignored_invalid_token")
            return
        if claims.kind is TokenKind.PASSWORD_RESET:
            return
        if await self.revocations.revoke(token, claims.expires_at):
            self.audit.record_user_activity(
                claims.subject, AuditActivity.LOGOUT.value, ENTITY_USER, claims.subject
            )
            self.logger.info("logout", principal_id=claims.subject, kind=claims.kind.value)

    # ------------------------------------------------------------------
    # passwords

    async def change_password(
        self, claims: TokenClaims, current_password: str, new_password: str
    ) -> AuthResult[None]:
        principal = self.store.get_principal(claims.subject)
        if principal is None:
            return AuthResult.failure(AuthError.USER_NOT_FOUND)
        if not await self.verify_password(principal.password_hash, current_password):
            self.logger.warning("password_change_rejected", principal_id=principal.id)
            return AuthResult.failure(AuthError.INVALID_CREDENTIALS)
        new_hash = await self.hash_password(new_password)
        self.store.update_principal(
            principal.id, password_hash=new_hash, credentials_changed_at=self._now()
        )
        self.audit.record_user_activity(
            principal.id, AuditActivity.PASSWORD_CHANGE.value, ENTITY_USER, principal.id
        )
        self.logger.info("password_changed", principal_id=principal.id)
        return AuthResult.success(None)

    async def request_password_reset(self, login_id_or_email: str) -> Optional[str]:
        """Issue a reset ticket when the identifier is known.

        Returns the ticket for the delivery collaborator, or None. Callers must
        answer identically either way.
        """
        principal = self.store.find_by_login_id(login_id_or_email)
        if principal is None or not principal.is_active:
            self.logger.info(
                "password_reset_unknown_identifier",
                identifier_hash=fingerprint(login_id_or_email.strip().lower()),
            )
            return None
        token, claims = self.codec.mint(
            principal.id, (), TokenKind.PASSWORD_RESET, tenant_id=principal.tenant_id
        )
        self.store.update_principal(
            principal.id, reset_token=token, reset_token_expires_at=claims.expires_at
        )
        self.audit.record_user_activity(
            principal.id, AuditActivity.PASSWORD_RESET_REQUEST.value, ENTITY_USER, principal.id
        )
        try:
            await asyncio.to_thread(self.delivery.send_password_reset, principal.summary(), token)
        except Exception as exc:
            # The caller's response must not differ for known identifiers
            self.logger.error(
                "password_reset_delivery_failed",
                principal_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return token

    async def reset_password(self, reset_token: str, new_password: str) -> bool:
        try:
            claims = self.codec.verify(reset_token, TokenKind.PASSWORD_RESET)
        except TokenVerificationError as exc:
            self.logger.warning("password_reset_invalid_token", reason=exc.reason)
            return False
        principal = self.store.consume_reset_ticket(claims.subject, reset_token, self._now())
        if principal is None:
            self.logger.warning("password_reset_ticket_rejected", principal_id=claims.subject)
            return False
        if not principal.is_active:
            self.logger.warning("password_reset_principal_disabled", principal_id=principal.id)
            return False
        new_hash = await self.hash_password(new_password)
        self.store.update_principal(
            principal.id, password_hash=new_hash, credentials_changed_at=self._now()
        )
        self.audit.record_user_activity(
            principal.id, AuditActivity.PASSWORD_RESET.value, ENTITY_USER, principal.id
        )
        self.logger.info("password_reset_completed", principal_id=principal.id)
        return True

    # ------------------------------------------------------------------
    # registration

    async def register(
        self,
        actor: TokenClaims,
        *,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
    ) -> PrincipalSummary:
        """Create a principal on behalf of ``actor``; role checks belong to the caller."""
        password_hash = await self.hash_password(password)
        principal = self.store.create_principal(
            username,
            email,
            password_hash,
            roles=normalize_roles(roles),
            tenant_id=actor.tenant_id or self.settings.default_tenant_id,
            full_name=full_name,
            phone_number=phone_number,
        )
        self.audit.record_user_activity(
            actor.subject, AuditActivity.USER_REGISTERED.value, ENTITY_USER, principal.id
        )
        return principal.summary()

    def ensure_bootstrap_admin(self) -> Optional[PrincipalSummary]:
        """Create the configured bootstrap admin if it does not exist yet."""
        username = self.settings.bootstrap_admin_username
        email = self.settings.bootstrap_admin_email
        password = self.settings.bootstrap_admin_password
        if not (username and email and password):
            return None
        existing = self.store.find_by_login_id(username)
        if existing is not None:
            return existing.summary()
        principal = self.store.create_principal(
            username,
            email,
            self._hash_password(password),
            roles=("ADMIN", "USER"),
            tenant_id=self.settings.default_tenant_id,
        )
        self.logger.info("bootstrap_admin_created", principal_id=principal.id)
        return principal.summary()
