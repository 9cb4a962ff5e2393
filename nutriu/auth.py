"""
This module provides the session and identity logic for the Nutri U application.

It defines the `SessionResolver` class, which is responsible for:
- Restoring the signed-in identity at startup, first from the local cache and
  then by validating it against the authentication service (resuming the
  session tokens stored for this browser when the client has no session).
- Resolving an authenticated subject to an administrator or nutritionist
  identity by probing the two role tables in a fixed order.
- Logging users in and out, and updating the signed-in user's profile.
- Reacting to sign-in / sign-out notifications from the authentication service.

The resolver is the only writer of the `IdentityStore`. Every remote call is
bounded by a timeout, and collaborator failures are logged and reported through
return values and user-facing notices instead of being raised to the GUI.
"""
# nutriu/auth.py

import json
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from nutriu.cache import IDENTITY_KEY, SESSION_KEY, slot_key
from nutriu.config import DEFAULT_LOOKUP_TIMEOUT, DEFAULT_SESSION_TIMEOUT
from nutriu.errors import (
    CacheCorruptionError,
    CredentialError,
    DataIntegrityError,
    GatewayError,
    RemoteTimeout,
)
from nutriu.models import ROLE_TABLES, Identity, Session, SessionEvent, identity_from_dict
from nutriu.store import IdentityState, IdentityStore

logger = logging.getLogger("nutriu.auth")

NO_PROFILE_NOTICE = "No profile was found for this account. Please contact support."
PROFILE_UPDATE_FAILED_NOTICE = "Your profile could not be saved. Please try again."
BUSY_NOTICE = "Another request is still in progress. Please wait a moment."

# Column in both role tables that references the auth subject.
SUBJECT_COLUMN = "id_auth_user"


class LoginStatus(str, Enum):
    OK = "ok"
    INVALID_CREDENTIALS = "invalid_credentials"
    NO_PROFILE = "no_profile"
    UNAVAILABLE = "unavailable"
    BUSY = "busy"


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login attempt.

    `credentials_valid` is True whenever the authentication service accepted
    the credentials, even if no profile could be resolved afterwards. The
    result is truthy only when the user is fully signed in.
    """
    status: LoginStatus
    identity: Optional[Identity] = None
    credentials_valid: bool = False

    def __bool__(self) -> bool:
        return self.status is LoginStatus.OK


class SessionResolver:
    """Owns the signed-in identity and keeps it in sync with the remote services."""

    def __init__(
        self,
        auth,
        gateway,
        cache,
        store: Optional[IdentityStore] = None,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        cache_slot: Optional[str] = None,
    ):
        """
        Args:
            auth: Authentication service (see `nutriu.gateway.SupabaseAuth`).
            gateway: Persistence gateway (see `nutriu.gateway.SupabaseGateway`).
            cache: Key-value cache (see `nutriu.cache.LocalCache`).
            store (IdentityStore, optional): State container to write to.
            session_timeout (float): Seconds allowed for session checks, sign-in and sign-out.
            lookup_timeout (float): Seconds allowed for each table read or write.
            cache_slot (str, optional): Browser the cache entries belong to.
        """
        self._auth = auth
        self._gateway = gateway
        self._cache = cache
        self.store = store or IdentityStore()
        self._session_timeout = session_timeout
        self._lookup_timeout = lookup_timeout
        self._identity_key = slot_key(IDENTITY_KEY, cache_slot)
        self._session_key = slot_key(SESSION_KEY, cache_slot)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="nutriu-remote")
        self._closed = False
        self._flight = threading.Lock()
        self._resolving = False
        self._unsubscribe = None
        self._notices = deque()
        self._notices_lock = threading.Lock()

    # State accessors

    @property
    def state(self) -> IdentityState:
        return self.store.state

    @property
    def identity(self) -> Optional[Identity]:
        return self.store.identity

    @property
    def loading(self) -> bool:
        return self.store.state.loading

    @property
    def verified(self) -> bool:
        return self.store.state.verified

    # Lifecycle

    def start(self) -> None:
        """Subscribes to session-change notifications from the authentication service."""
        if self._unsubscribe is None:
            self._unsubscribe = self._auth.on_session_change(self._on_session_change)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Cancels the subscription and releases the worker threads."""
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.exception("Failed to cancel the session-change subscription")
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # Notices

    def _notify(self, message: str) -> None:
        with self._notices_lock:
            self._notices.append(message)

    def pop_notices(self) -> List[str]:
        """Returns and clears the user-facing messages queued since the last call."""
        with self._notices_lock:
            notices = list(self._notices)
            self._notices.clear()
        return notices

    # Remote calls

    def _call(self, timeout: float, what: str, fn, *args, **kwargs) -> Any:
        """Runs `fn` on the worker pool and waits at most `timeout` seconds."""
        if self._closed:
            raise GatewayError(f"{what}: resolver is closed")
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning("%s timed out after %ss", what, timeout)
            raise RemoteTimeout(f"{what} timed out after {timeout}s")

    # Cache helpers

    def _persist(self, identity: Identity) -> None:
        try:
            self._cache.set(self._identity_key, json.dumps(identity.to_dict()))
        except OSError as e:
            logger.warning("Could not write the session cache: %s", e)

    def _remember(self, session: Optional[Session]) -> None:
        """Stores the session tokens so that a later browser session can resume it."""
        if session is None or not session.refresh_token:
            return
        tokens = {"access_token": session.access_token, "refresh_token": session.refresh_token}
        try:
            self._cache.set(self._session_key, json.dumps(tokens))
        except OSError as e:
            logger.warning("Could not write the session tokens: %s", e)

    def _stored_tokens(self) -> Optional[Dict[str, str]]:
        try:
            raw = self._cache.get(self._session_key)
        except OSError as e:
            logger.warning("Could not read the session tokens: %s", e)
            return None
        if raw is None:
            return None
        try:
            tokens = json.loads(raw)
        except ValueError:
            tokens = None
        if not isinstance(tokens, dict) or not tokens.get("refresh_token"):
            logger.warning("Discarding malformed session tokens")
            return None
        return tokens

    def _erase_cache(self) -> None:
        try:
            self._cache.remove(self._identity_key)
            self._cache.remove(self._session_key)
        except OSError as e:
            logger.warning("Could not erase the session cache: %s", e)

    def _publish(self, identity: Identity) -> None:
        self.store.update(identity=identity, verified=True)
        self._persist(identity)

    def _clear(self) -> None:
        self.store.update(identity=None, verified=False)
        self._erase_cache()

    # Session restore

    def restore_session(self) -> Optional[Identity]:
        """Restores the identity at startup: cache first, then remote validation.

        Returns:
            Identity or None: The identity in effect once validation finished or failed.
        """
        self.load_cached()
        return self.validate_session()

    def load_cached(self) -> Optional[Identity]:
        """Publishes the cached identity (unverified) and clears `loading`."""
        identity = None
        try:
            raw = self._cache.get(self._identity_key)
        except OSError as e:
            logger.warning("Could not read the session cache: %s", e)
            raw = None
        if raw is not None:
            try:
                identity = identity_from_dict(json.loads(raw))
            except (ValueError, CacheCorruptionError) as e:
                logger.warning("Discarding malformed cached identity: %s", e)
                self._erase_cache()
        self.store.update(identity=identity, loading=False, verified=False)
        if identity is not None:
            logger.info("Restored cached %s identity", identity.role.value)
        return identity

    def _resume(self) -> Optional[Session]:
        """Rebuilds the remote session from the stored tokens, if there are any."""
        tokens = self._stored_tokens()
        if tokens is None:
            return None
        try:
            return self._call(
                self._session_timeout,
                "session resume",
                self._auth.resume_session,
                tokens.get("access_token") or "",
                tokens["refresh_token"],
            )
        except CredentialError:
            logger.info("Stored session is no longer valid")
            return None

    def validate_session(self) -> Optional[Identity]:
        """Confirms the current identity against the authentication service.

        A client without a live session resumes the one stored for this browser.
        Failures are logged and leave the current (possibly cached) identity in place.
        """
        self._resolving = True
        try:
            session = self._call(self._session_timeout, "session check", self._auth.get_current_session)
            if session is None:
                session = self._resume()
            if session is None:
                logger.info("No active session; clearing identity")
                self._clear()
                return None
            if self._resolve(session.subject_id) is not None:
                self._remember(session)
        except GatewayError as e:
            logger.warning("Session validation failed, keeping current identity: %s", e)
        except Exception:
            logger.exception("Unexpected error while validating the session")
        finally:
            self._resolving = False
            if self.loading:
                self.store.update(loading=False)
        return self.identity

    # Role resolution

    def _lookup(self, subject_id: str) -> Optional[Identity]:
        for variant in ROLE_TABLES:
            rows = self._call(
                self._lookup_timeout,
                f"{variant.TABLE} lookup",
                self._gateway.select,
                variant.TABLE,
                variant.SELECT,
                filters={SUBJECT_COLUMN: subject_id},
                limit=2,
            )
            if len(rows) > 1:
                raise DataIntegrityError(f"{len(rows)} rows in {variant.TABLE} reference one subject")
            if rows:
                try:
                    return variant.from_row(subject_id, rows[0])
                except (KeyError, TypeError, ValueError) as e:
                    raise DataIntegrityError(f"malformed {variant.TABLE} row: {e}") from e
        return None

    def _resolve(self, subject_id: str) -> Optional[Identity]:
        identity = self._lookup(subject_id)
        if identity is None:
            logger.warning("Authenticated subject has no profile in any role table")
            self._clear()
            self._notify(NO_PROFILE_NOTICE)
            return None
        logger.info("Resolved %s profile %s", identity.role.value, identity.role_profile_id)
        self._publish(identity)
        return identity

    def resolve_role(self, subject_id: str) -> Optional[Identity]:
        """Resolves `subject_id` to an identity and makes it current.

        Administrators take precedence over nutritionists. A subject without a
        profile clears the identity and queues a notice. Lookup failures leave
        the current identity untouched.

        Returns:
            Identity or None: The resolved identity, or None if there is none.
        """
        try:
            return self._resolve(subject_id)
        except GatewayError as e:
            logger.error("Role resolution failed: %s", e)
            return None

    # User actions

    def login(self, email: str, password: str) -> LoginResult:
        """Signs in with email and password and resolves the user's role.

        Returns:
            LoginResult: The outcome; truthy only if a profile was resolved.
        """
        if not self._flight.acquire(blocking=False):
            return LoginResult(LoginStatus.BUSY)
        self._resolving = True
        self.store.update(loading=True)
        try:
            return self._login(email, password)
        finally:
            self._resolving = False
            self.store.update(loading=False)
            self._flight.release()

    def _login(self, email: str, password: str) -> LoginResult:
        try:
            session = self._call(
                self._session_timeout, "sign-in", self._auth.sign_in_with_password, email, password
            )
        except CredentialError:
            logger.info("Sign-in rejected")
            return LoginResult(LoginStatus.INVALID_CREDENTIALS)
        except GatewayError as e:
            logger.warning("Sign-in unavailable: %s", e)
            return LoginResult(LoginStatus.UNAVAILABLE)

        try:
            identity = self._resolve(session.subject_id)
        except GatewayError as e:
            logger.error("Role resolution after sign-in failed: %s", e)
            return LoginResult(LoginStatus.UNAVAILABLE, credentials_valid=True)
        if identity is None:
            return LoginResult(LoginStatus.NO_PROFILE, credentials_valid=True)
        self._remember(session)
        return LoginResult(LoginStatus.OK, identity=identity, credentials_valid=True)

    def logout(self) -> None:
        """Ends the session remotely and always clears the local identity and cache."""
        with self._flight:
            try:
                self._call(self._session_timeout, "sign-out", self._auth.sign_out)
            except GatewayError as e:
                logger.warning("Remote sign-out failed, clearing locally: %s", e)
            except Exception:
                logger.exception("Unexpected error during sign-out, clearing locally")
            finally:
                self._clear()

    def update_profile(self, changes: Dict[str, Any]) -> bool:
        """Writes the role-legal subset of `changes` and mirrors it locally.

        Fields the current role cannot hold are dropped silently. No remote
        write happens when nothing is left to write.

        Returns:
            bool: True if the profile is up to date, False if nothing was applied.
        """
        if self.identity is None:
            return False
        if not self._flight.acquire(blocking=False):
            self._notify(BUSY_NOTICE)
            return False
        try:
            identity = self.identity
            if identity is None:
                return False
            columns, accepted = identity.column_values(changes or {})
            if not columns:
                return True
            try:
                rows = self._call(
                    self._lookup_timeout,
                    "profile update",
                    self._gateway.update,
                    identity.TABLE,
                    columns,
                    {SUBJECT_COLUMN: identity.subject_id},
                )
            except GatewayError as e:
                logger.warning("Profile update failed: %s", e)
                self._notify(PROFILE_UPDATE_FAILED_NOTICE)
                return False
            if not rows:
                logger.warning("Profile update matched no rows in %s", identity.TABLE)
                self._notify(PROFILE_UPDATE_FAILED_NOTICE)
                return False
            updated = identity.merged(accepted)
            self.store.update(identity=updated)
            self._persist(updated)
            return True
        finally:
            self._flight.release()

    # Notifications

    def _on_session_change(self, event: SessionEvent, session) -> None:
        if event is SessionEvent.SIGNED_IN:
            # A login or restore on this resolver resolves the role itself.
            if self._resolving or session is None:
                return
            if self.resolve_role(session.subject_id) is not None:
                self._remember(session)
        elif event is SessionEvent.TOKEN_REFRESHED:
            identity = self.identity
            if session is not None and identity is not None and session.subject_id == identity.subject_id:
                self._remember(session)
        elif event is SessionEvent.SIGNED_OUT:
            self._clear()
