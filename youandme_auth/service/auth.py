from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from youandme_auth.config import Settings
from youandme_auth.logging import get_logger
from youandme_auth.service.errors import (
    AccountLockedError,
    ConflictError,
    EmailNotConfirmedError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    RefreshTokenInvalidError,
    SessionRevokedError,
    TokenExpiredError,
    TokenSignatureInvalidError,
    TwoFactorInvalidCodeError,
    ValidationError,
)
from youandme_auth.storage.common import normalize_email
from youandme_auth.storage.errors import ConstraintViolation
from youandme_auth.storage.models import Session, TwoFactorConfig, User
from youandme_auth.storage.redis_cache import RedisCache
from youandme_auth.tokens import ACCESS_TOKEN_TYPE, TokenCodec, TokenDecodeError

logger = get_logger(__name__)

LOGIN_SCOPE = "login"
TWO_FACTOR_SCOPE = "2fa"
TWO_FACTOR_TEMP_NAMESPACE = "auth:2fa_temp"
EMAIL_CONFIRM_NAMESPACE = "auth:email_confirm"
EMAIL_CONFIRM_TTL_SECONDS = 24 * 60 * 60

TWO_FACTOR_MAX_ATTEMPTS = 5
TWO_FACTOR_LOCKOUT_SECONDS = 300
BACKUP_CODE_COUNT = 10
_BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        email_confirmed: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_confirmed(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_two_factor(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> TwoFactorConfig: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def enable_two_factor(self, user_id: str, backup_code_hashes: List[str]) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def delete_two_factor(self, user_id: str) -> None: ...

    def create_exclusive_session(self, session: Session) -> List[Session]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_id(self, token_id: str) -> Optional[Session]: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_token_id: str,
        token_id: str,
        refresh_token_hash: str,
    ) -> Optional[Session]: ...

    def revoke_session(
        self, session_id: str, reason: str = "logout"
    ) -> Optional[Session]: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        exclude_session_id: Optional[str] = None,
        reason: str = "admin",
    ) -> List[Session]: ...

    def touch_session(self, session_id: str, accessed_at: datetime) -> None: ...

    def deactivate_expired_sessions(
        self, now: Optional[datetime] = None
    ) -> List[Session]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    token_id: str


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_at: datetime
    user: User
    session: Session
    token_type: str = "bearer"


@dataclass
class TwoFactorChallenge:
    """Password accepted; the caller must exchange ``temp_token`` plus a code."""

    temp_token: str
    expires_at: datetime
    user_id: str = field(repr=False, default="")


class AuthService:
    """Credential issuer: login, two-factor, refresh rotation, and revocation.

    Redis backs lockout counters and single-use tokens when available; the
    in-process dictionaries below stand in for it in single-node dev and test
    deployments.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        two_factor_enabled: Optional[bool] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self.two_factor_enabled = (
            settings.enable_two_factor if two_factor_enabled is None else two_factor_enabled
        )
        self._state_lock = threading.Lock()
        # "scope:subject" -> (count, window_start)
        self._failed_attempts: dict[str, tuple[int, datetime]] = {}
        # "scope:subject" -> locked_until
        self._lockouts: dict[str, datetime] = {}
        # "namespace:token" -> (payload, expires_at)
        self._single_use: dict[str, tuple[dict, datetime]] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.tokens = TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
        self.clock_skew_leeway = timedelta(seconds=self.tokens.leeway_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # registration

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Tuple[User, str]:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = self.store.create_user(
                email,
                display_name,
                email_confirmed=not self.settings.require_confirmed_email,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        self.save_password(user.id, password)
        token = secrets.token_urlsafe(32)
        await self._store_single_use(
            EMAIL_CONFIRM_NAMESPACE,
            token,
            {"user_id": user.id},
            EMAIL_CONFIRM_TTL_SECONDS,
        )
        self.logger.info("user_registered", user_id=user.id)
        return user, token

    async def confirm_email(self, token: str) -> User:
        payload = await self._pop_single_use(EMAIL_CONFIRM_NAMESPACE, token)
        if not payload:
            raise ValidationError("confirmation token is invalid or expired")
        user = self.store.mark_email_confirmed(payload.get("user_id", ""))
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("email_confirmed", user_id=user.id)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    # login

    async def login(
        self,
        email: str,
        password: str,
        second_factor_code: Optional[str] = None,
        *,
        client_metadata: Optional[dict] = None,
    ) -> Union[LoginResult, TwoFactorChallenge]:
        subject = normalize_email(email)
        remaining = await self._lockout_remaining(LOGIN_SCOPE, subject)
        if remaining:
            self.logger.warning("login_locked_out", retry_after_seconds=remaining)
            raise AccountLockedError(
                "account temporarily locked after repeated failed sign-in attempts",
                detail={"retry_after_seconds": remaining},
            )

        user = self.store.get_user_by_email(subject)
        if not user or not user.is_active or not self.verify_password(user.id, password):
            locked, attempts, lockout_left = await self._record_failure(
                LOGIN_SCOPE,
                subject,
                max_attempts=self.settings.login_max_failed_attempts,
                window_seconds=self.settings.login_lockout_window_seconds,
                lockout_seconds=self.settings.login_lockout_seconds,
            )
            self.logger.warning(
                "login_failed",
                user_id=user.id if user else None,
                attempts=attempts,
            )
            if locked:
                raise AccountLockedError(
                    "account temporarily locked after repeated failed sign-in attempts",
                    detail={"retry_after_seconds": lockout_left},
                )
            raise InvalidCredentialsError("invalid email or password")

        if self.settings.require_confirmed_email and not user.email_confirmed:
            raise EmailNotConfirmedError("email address has not been confirmed")
        await self._clear_failures(LOGIN_SCOPE, subject)

        cfg = self._active_two_factor(user.id)
        if cfg:
            if not second_factor_code:
                return await self._issue_two_factor_challenge(user, client_metadata)
            await self._check_second_factor(user, cfg, second_factor_code)
        return await self._open_session(user, client_metadata)

    async def verify_two_factor(
        self,
        temp_token: str,
        code: str,
        *,
        client_metadata: Optional[dict] = None,
    ) -> LoginResult:
        pending = await self._peek_single_use(TWO_FACTOR_TEMP_NAMESPACE, temp_token)
        if not pending:
            raise TwoFactorInvalidCodeError("two-factor challenge is invalid or expired")
        user = self.store.get_user(pending.get("user_id", ""))
        cfg = self._active_two_factor(user.id) if user and user.is_active else None
        if not user or not cfg:
            await self._pop_single_use(TWO_FACTOR_TEMP_NAMESPACE, temp_token)
            raise TwoFactorInvalidCodeError("two-factor challenge is invalid or expired")
        await self._check_second_factor(user, cfg, code)
        # A concurrent exchange of the same challenge loses here
        if not await self._pop_single_use(TWO_FACTOR_TEMP_NAMESPACE, temp_token):
            raise TwoFactorInvalidCodeError("two-factor challenge is invalid or expired")
        return await self._open_session(
            user, client_metadata or pending.get("client_metadata")
        )

    async def _issue_two_factor_challenge(
        self, user: User, client_metadata: Optional[dict]
    ) -> TwoFactorChallenge:
        ttl = self.settings.two_factor_temp_token_ttl_seconds
        temp_token = secrets.token_urlsafe(32)
        await self._store_single_use(
            TWO_FACTOR_TEMP_NAMESPACE,
            temp_token,
            {"user_id": user.id, "client_metadata": client_metadata},
            ttl,
        )
        self.logger.info("two_factor_challenge_issued", user_id=user.id)
        return TwoFactorChallenge(
            temp_token=temp_token,
            expires_at=self._now() + timedelta(seconds=ttl),
            user_id=user.id,
        )

    async def _open_session(
        self, user: User, client_metadata: Optional[dict]
    ) -> LoginResult:
        session_id = str(uuid.uuid4())
        refresh_token = self._new_refresh_token(session_id)
        session = Session.new(
            user.id,
            str(uuid.uuid4()),
            self._hash_secret(refresh_token),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            client_metadata=client_metadata or None,
            session_id=session_id,
        )
        superseded = self.store.create_exclusive_session(session)
        await self._evict_cached(superseded)
        access_token, expires_at = self._issue_access_token(user, session)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            superseded=len(superseded),
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user=user,
            session=session,
        )

    # refresh and revocation

    async def refresh(
        self, refresh_token: str, access_token: Optional[str] = None
    ) -> LoginResult:
        session_id, _, secret = (refresh_token or "").partition(".")
        if not session_id or not secret:
            raise RefreshTokenInvalidError("refresh token is malformed")
        session = self.store.get_session(session_id)
        if not session:
            raise RefreshTokenInvalidError("refresh token is not recognised")
        if not session.is_active:
            if session.revoked_reason == "expired":
                raise RefreshTokenInvalidError("session has expired")
            raise SessionRevokedError("session has been revoked")
        if session.is_expired(self._now()):
            await self._revoke(session.id, "expired")
            raise RefreshTokenInvalidError("session has expired")
        if not self._secret_matches(session.refresh_token_hash, refresh_token):
            self.logger.warning("refresh_token_mismatch", session_id=session.id)
            raise RefreshTokenInvalidError("refresh token is not recognised")
        if access_token:
            try:
                claims = self.tokens.decode(access_token, verify_exp=False)
            except TokenDecodeError:
                raise RefreshTokenInvalidError("access token does not match the session")
            if claims.get("sid") != session.id:
                raise RefreshTokenInvalidError("access token does not match the session")

        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            await self._revoke(session.id, "admin")
            raise SessionRevokedError("session has been revoked")

        new_refresh = self._new_refresh_token(session.id)
        rotated = self.store.rotate_session_tokens(
            session.id, session.token_id, str(uuid.uuid4()), self._hash_secret(new_refresh)
        )
        if not rotated:
            self.logger.warning("refresh_rotation_lost", session_id=session.id)
            raise RefreshTokenInvalidError("refresh token was already used")
        await self._evict_cached([session])
        access, expires_at = self._issue_access_token(user, rotated)
        self.logger.info("session_refreshed", user_id=user.id, session_id=session.id)
        return LoginResult(
            access_token=access,
            refresh_token=new_refresh,
            expires_at=expires_at,
            user=user,
            session=rotated,
        )

    def session_id_from_token(self, access_token: str) -> str:
        """Resolve the session behind a correctly signed token, expired or not."""
        try:
            claims = self.tokens.decode(access_token, verify_exp=False)
        except TokenDecodeError as exc:
            raise TokenSignatureInvalidError(str(exc))
        session_id = claims.get("sid")
        if not session_id:
            raise TokenSignatureInvalidError("token is missing its session")
        return session_id

    async def logout(self, session_id: str) -> bool:
        revoked = await self._revoke(session_id, "logout")
        if revoked:
            self.logger.info("logged_out", user_id=revoked.user_id, session_id=session_id)
        return revoked is not None

    async def expire_session(self, session_id: str) -> bool:
        return await self._revoke(session_id, "expired") is not None

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        exclude_session_id: Optional[str] = None,
        reason: str = "admin",
    ) -> int:
        revoked = self.store.revoke_user_sessions(
            user_id, exclude_session_id=exclude_session_id, reason=reason
        )
        await self._evict_cached(revoked)
        self.logger.info(
            "user_sessions_revoked", user_id=user_id, count=len(revoked), reason=reason
        )
        return len(revoked)

    async def cleanup_expired_sessions(self) -> int:
        expired = self.store.deactivate_expired_sessions(self._now())
        await self._evict_cached(expired)
        if expired:
            self.logger.info("expired_sessions_deactivated", count=len(expired))
        return len(expired)

    async def _revoke(self, session_id: str, reason: str) -> Optional[Session]:
        revoked = self.store.revoke_session(session_id, reason=reason)
        if revoked:
            await self._evict_cached([revoked])
        return revoked

    async def _evict_cached(self, sessions: Iterable[Session]) -> None:
        token_ids = [sess.token_id for sess in sessions]
        if not self.cache or not token_ids:
            return
        try:
            await self.cache.evict_token_sessions(token_ids)
        except Exception as exc:
            # Entries still age out after the validation cache TTL
            self.logger.warning(
                "session_cache_evict_failed", count=len(token_ids), error=str(exc)
            )

    def _issue_access_token(self, user: User, session: Session) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = min(
            now + timedelta(minutes=self.settings.access_token_ttl_minutes),
            session.expires_at,
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "jti": session.token_id,
            "roles": [user.role],
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "token_type": ACCESS_TOKEN_TYPE,
        }
        return self.tokens.encode(payload), expires_at

    def decode_access_token(self, token: str) -> dict[str, Any]:
        try:
            return self.tokens.decode(token)
        except TokenDecodeError as exc:
            if exc.expired:
                raise TokenExpiredError("access token has expired")
            raise TokenSignatureInvalidError(str(exc))

    @staticmethod
    def _new_refresh_token(session_id: str) -> str:
        return f"{session_id}.{secrets.token_urlsafe(48)}"

    # two-factor management

    def _active_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        if not self.two_factor_enabled:
            return None
        cfg = self.store.get_two_factor(user_id)
        return cfg if cfg and cfg.enabled else None

    async def begin_two_factor_setup(self, user_id: str) -> Dict[str, str]:
        if not self.two_factor_enabled:
            raise ForbiddenError("two-factor authentication is disabled")
        user = self.get_user(user_id)
        existing = self.store.get_two_factor(user_id)
        if existing and existing.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = base64.b32encode(secrets.token_bytes(20)).decode("utf-8").rstrip("=")
        self.store.set_two_factor(user_id, secret, enabled=False)
        issuer = self.settings.two_factor_issuer
        uri = (
            f"otpauth://totp/{quote(issuer)}:{quote(user.email)}"
            f"?secret={secret}&issuer={quote(issuer)}&algorithm=SHA1&digits=6&period=30"
        )
        self.logger.info("two_factor_setup_started", user_id=user_id)
        return {"secret": secret, "otpauth_uri": uri}

    async def enable_two_factor(self, user_id: str, code: str) -> List[str]:
        cfg = self.store.get_two_factor(user_id)
        if not cfg:
            raise ValidationError("start two-factor setup before enabling it")
        if cfg.enabled:
            raise ConflictError("two-factor authentication is already enabled")
        normalized = self._normalize_code(code)
        if not (normalized.isdigit() and self._verify_totp(cfg.secret, normalized)):
            raise TwoFactorInvalidCodeError("invalid two-factor code")
        codes = self._generate_backup_codes()
        self.store.enable_two_factor(user_id, [self._hash_backup_code(c) for c in codes])
        self.logger.info("two_factor_enabled", user_id=user_id)
        return codes

    async def disable_two_factor(self, user_id: str, password: str) -> None:
        if not self.verify_password(user_id, password):
            raise InvalidCredentialsError("invalid password")
        self.store.delete_two_factor(user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    async def _check_second_factor(
        self, user: User, cfg: TwoFactorConfig, code: str
    ) -> None:
        remaining = await self._lockout_remaining(TWO_FACTOR_SCOPE, user.id)
        if remaining:
            self.logger.warning("two_factor_locked_out", user_id=user.id)
            raise AccountLockedError(
                "too many invalid two-factor codes",
                detail={"retry_after_seconds": remaining},
            )
        if self._verify_second_factor(user.id, cfg, code):
            await self._clear_failures(TWO_FACTOR_SCOPE, user.id)
            return
        locked, attempts, lockout_left = await self._record_failure(
            TWO_FACTOR_SCOPE,
            user.id,
            max_attempts=TWO_FACTOR_MAX_ATTEMPTS,
            window_seconds=TWO_FACTOR_LOCKOUT_SECONDS,
            lockout_seconds=TWO_FACTOR_LOCKOUT_SECONDS,
        )
        self.logger.warning("two_factor_failed", user_id=user.id, attempts=attempts)
        if locked:
            raise AccountLockedError(
                "too many invalid two-factor codes",
                detail={"retry_after_seconds": lockout_left},
            )
        raise TwoFactorInvalidCodeError("invalid two-factor code")

    def _verify_second_factor(
        self, user_id: str, cfg: TwoFactorConfig, code: str
    ) -> bool:
        normalized = self._normalize_code(code)
        if not normalized:
            return False
        if normalized.isdigit() and len(normalized) == 6:
            return self._verify_totp(cfg.secret, normalized)
        consumed = self.store.consume_backup_code(
            user_id, self._hash_backup_code(normalized)
        )
        if consumed:
            self.logger.info("backup_code_used", user_id=user_id)
        return consumed

    @staticmethod
    def _normalize_code(code: Optional[str]) -> str:
        return (code or "").replace(" ", "").replace("-", "").upper()

    @staticmethod
    def _generate_backup_codes() -> List[str]:
        codes = []
        for _ in range(BACKUP_CODE_COUNT):
            raw = "".join(secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(16))
            codes.append(f"{raw[:8]}-{raw[8:]}")
        return codes

    @classmethod
    def _hash_backup_code(cls, code: str) -> str:
        return hashlib.sha256(cls._normalize_code(code).encode()).hexdigest()

    def _verify_totp(self, secret: str, code: str, *, interval: int = 30) -> bool:
        # One adjacent step either side for clock drift
        now = time.time()
        for offset in (-1, 0, 1):
            generated = self._generate_totp(secret, now + offset * interval, interval=interval)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    def _generate_totp(
        self, secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
    ) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except ValueError:
            self.logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**digits
        )
        return str(code_int).zfill(digits)

    # passwords

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._secret_matches(stored_hash, password)

    def _hash_secret(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def _secret_matches(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # lockouts and single-use tokens, Redis first with in-process fallback

    async def _lockout_remaining(self, scope: str, subject: str) -> int:
        if self.cache:
            return await self.cache.lockout_remaining(scope, subject)
        key = f"{scope}:{subject}"
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(key)
            if locked_until and locked_until > now:
                return max(1, int((locked_until - now).total_seconds()))
            if locked_until:
                self._lockouts.pop(key, None)
        return 0

    async def _record_failure(
        self,
        scope: str,
        subject: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lockout_seconds: int,
    ) -> Tuple[bool, int, int]:
        if self.cache:
            locked, attempts, left = await self.cache.record_failed_attempt(
                scope,
                subject,
                max_attempts=max_attempts,
                window_seconds=window_seconds,
                lockout_seconds=lockout_seconds,
            )
            if locked and attempts >= 0:
                self.logger.warning("lockout_triggered", scope=scope, attempts=attempts)
            return locked, attempts, left

        key = f"{scope}:{subject}"
        now = self._now()
        with self._state_lock:
            current = self._failed_attempts.get(key)
            attempts, window_start = 1, now
            if current:
                count, prev_start = current
                if now - prev_start < timedelta(seconds=window_seconds):
                    attempts, window_start = count + 1, prev_start
            if attempts >= max_attempts:
                self._lockouts[key] = now + timedelta(seconds=lockout_seconds)
                self._failed_attempts.pop(key, None)
                self.logger.warning("lockout_triggered", scope=scope, attempts=attempts)
                return True, attempts, lockout_seconds
            self._failed_attempts[key] = (attempts, window_start)
        return False, attempts, 0

    async def _clear_failures(self, scope: str, subject: str) -> None:
        if self.cache:
            await self.cache.clear_failed_attempts(scope, subject)
            return
        with self._state_lock:
            self._failed_attempts.pop(f"{scope}:{subject}", None)

    async def clear_lockout(self, scope: str, subject: str) -> None:
        if self.cache:
            await self.cache.clear_lockout(scope, subject)
            return
        key = f"{scope}:{subject}"
        with self._state_lock:
            self._failed_attempts.pop(key, None)
            self._lockouts.pop(key, None)

    async def _store_single_use(
        self, namespace: str, token: str, value: dict, ttl_seconds: int
    ) -> None:
        if self.cache:
            await self.cache.store_single_use(namespace, token, value, ttl_seconds)
            return
        with self._state_lock:
            self._single_use[f"{namespace}:{token}"] = (
                dict(value),
                self._now() + timedelta(seconds=ttl_seconds),
            )

    async def _peek_single_use(self, namespace: str, token: str) -> Optional[dict]:
        if self.cache:
            return await self.cache.peek_single_use(namespace, token)
        with self._state_lock:
            entry = self._single_use.get(f"{namespace}:{token}")
        if not entry or entry[1] <= self._now():
            return None
        return dict(entry[0])

    async def _pop_single_use(self, namespace: str, token: str) -> Optional[dict]:
        if self.cache:
            return await self.cache.pop_single_use(namespace, token)
        with self._state_lock:
            entry = self._single_use.pop(f"{namespace}:{token}", None)
        if not entry or entry[1] <= self._now():
            return None
        return entry[0]

    def cleanup_expired_states(self) -> int:
        """Drop expired in-process lockouts, counters, and single-use tokens."""
        now = self._now()
        window = timedelta(seconds=self.settings.login_lockout_window_seconds)
        with self._state_lock:
            expired_tokens = [k for k, (_, exp) in self._single_use.items() if exp <= now]
            for key in expired_tokens:
                self._single_use.pop(key, None)
            expired_lockouts = [k for k, until in self._lockouts.items() if until <= now]
            for key in expired_lockouts:
                self._lockouts.pop(key, None)
            stale_attempts = [
                k for k, (_, start) in self._failed_attempts.items() if now - start >= window
            ]
            for key in stale_attempts:
                self._failed_attempts.pop(key, None)
        cleaned = len(expired_tokens) + len(expired_lockouts) + len(stale_attempts)
        if cleaned:
            self.logger.debug(
                "auth_state_cleanup",
                cleaned=cleaned,
                tokens=len(expired_tokens),
                lockouts=len(expired_lockouts),
                attempts=len(stale_attempts),
            )
        return cleaned
