"""
Supabase-backed collaborators: the persistence gateway and the authentication service.

`SupabaseGateway` exposes row-oriented reads and writes with equality filters
over the PostgREST API; `SupabaseAuth` wraps the Supabase auth client. Both
translate client-library exceptions into `nutriu.errors` types so that
callers never depend on the client's error classes.

The client is duck-typed (anything shaped like `supabase.create_client(...)`),
which keeps the adapters easy to replace with in-memory fakes in tests.

Security:
- The application client uses the anon key; row-level security applies.
- Account provisioning requires a separate client built with the service
  role key and must stay server-side.
- Passwords and tokens are never logged.
"""
# nutriu/gateway.py

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client
from supabase_auth.errors import AuthApiError, AuthError, AuthInvalidCredentialsError, AuthSessionMissingError

from nutriu.errors import CredentialError, GatewayError
from nutriu.models import Session, SessionEvent

logger = logging.getLogger("nutriu.gateway")

Row = Dict[str, Any]

# Statuses the auth API uses for rejected credentials.
_CREDENTIAL_STATUSES = frozenset({400, 401, 422})


def create_supabase_client(url: str, key: str) -> Client:
    """Creates a Supabase client for the given project URL and API key."""
    return create_client(url, key)


class SupabaseGateway:
    """Row-level access to the remote tables."""

    def __init__(self, client: Any):
        self._client = client

    def _execute(self, query: Any, table: str, action: str) -> List[Row]:
        try:
            response = query.execute()
        except APIError as e:
            logger.warning("%s on %s failed: code=%s", action, table, getattr(e, "code", None))
            raise GatewayError(f"{action} on {table} failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.warning("%s on %s failed: %s", action, table, type(e).__name__)
            raise GatewayError(f"{action} on {table} failed: {type(e).__name__}") from e
        data = getattr(response, "data", None)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    @staticmethod
    def _filtered(query: Any, filters: Optional[Dict[str, Any]]) -> Any:
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        return query

    def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Dict[str, Any]] = None,
        in_filters: Optional[Dict[str, Iterable[Any]]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Returns rows of `table` matching every equality and membership filter."""
        query = self._filtered(self._client.table(table).select(columns), filters)
        for column, values in (in_filters or {}).items():
            query = query.in_(column, list(values))
        if order:
            query = query.order(order, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        return self._execute(query, table, "select")

    def update(self, table: str, values: Row, filters: Dict[str, Any]) -> List[Row]:
        """Updates matching rows and returns them as stored."""
        if not filters:
            raise ValueError("update requires at least one filter")
        query = self._filtered(self._client.table(table).update(values), filters)
        return self._execute(query, table, "update")

    def insert(self, table: str, values: Row) -> List[Row]:
        return self._execute(self._client.table(table).insert(values), table, "insert")

    def delete(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        if not filters:
            raise ValueError("delete requires at least one filter")
        query = self._filtered(self._client.table(table).delete(), filters)
        return self._execute(query, table, "delete")


def _to_session(raw: Any) -> Optional[Session]:
    """Converts a supabase-auth session (or None) into a `Session`.

    Auth responses wrap the session together with the user; both shapes are accepted.
    """
    raw = getattr(raw, "session", None) or raw
    if raw is None:
        return None
    user = getattr(raw, "user", None)
    if user is None or not getattr(user, "id", None):
        return None
    return Session(
        subject_id=str(user.id),
        email=getattr(user, "email", None) or "",
        access_token=getattr(raw, "access_token", None) or "",
        refresh_token=getattr(raw, "refresh_token", None) or "",
    )


class SupabaseAuth:
    """The Supabase auth client behind the interface the session resolver expects."""

    def __init__(self, client: Any, admin_client: Any = None):
        """
        Args:
            client: Supabase client used for the end-user session.
            admin_client: Optional client built with the service role key,
                required for account provisioning.
        """
        self._client = client
        self._admin_client = admin_client

    @property
    def can_provision(self) -> bool:
        return self._admin_client is not None

    def get_current_session(self) -> Optional[Session]:
        try:
            raw = self._client.auth.get_session()
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"session check failed: {type(e).__name__}") from e
        return _to_session(raw)

    def resume_session(self, access_token: str, refresh_token: str) -> Session:
        """Installs stored tokens on this client, refreshing them if the access token expired.

        Raises:
            CredentialError: If the tokens were revoked or have expired.
            GatewayError: If the auth service cannot be reached or fails.
        """
        try:
            response = self._client.auth.set_session(access_token, refresh_token)
        except AuthSessionMissingError as e:
            raise CredentialError("session_expired") from e
        except AuthApiError as e:
            if getattr(e, "status", None) in _CREDENTIAL_STATUSES:
                raise CredentialError("session_expired") from e
            raise GatewayError(f"session resume failed: status={getattr(e, 'status', None)}") from e
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"session resume failed: {type(e).__name__}") from e
        session = _to_session(response)
        if session is None:
            raise CredentialError("session_expired")
        return session

    def sign_in_with_password(self, email: str, password: str) -> Session:
        """Verifies the credentials and returns the new session.

        Raises:
            CredentialError: If the credentials are rejected.
            GatewayError: If the auth service cannot be reached or fails.
        """
        try:
            response = self._client.auth.sign_in_with_password({"email": email, "password": password})
        except AuthInvalidCredentialsError as e:
            raise CredentialError("invalid_credentials") from e
        except AuthApiError as e:
            if getattr(e, "status", None) in _CREDENTIAL_STATUSES:
                raise CredentialError("invalid_credentials") from e
            raise GatewayError(f"sign-in failed: status={getattr(e, 'status', None)}") from e
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"sign-in failed: {type(e).__name__}") from e
        session = _to_session(response)
        if session is None:
            raise CredentialError("invalid_credentials")
        return session

    def sign_out(self) -> None:
        try:
            self._client.auth.sign_out()
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"sign-out failed: {type(e).__name__}") from e

    def on_session_change(self, callback: Callable[[SessionEvent, Optional[Session]], None]) -> Callable[[], None]:
        """Forwards the session notifications the resolver reacts to.

        Returns:
            callable: Cancels the subscription.
        """
        def handler(event, raw_session):
            if event == SessionEvent.SIGNED_IN.value:
                callback(SessionEvent.SIGNED_IN, _to_session(raw_session))
            elif event == SessionEvent.TOKEN_REFRESHED.value:
                callback(SessionEvent.TOKEN_REFRESHED, _to_session(raw_session))
            elif event == SessionEvent.SIGNED_OUT.value:
                callback(SessionEvent.SIGNED_OUT, None)

        subscription = self._client.auth.on_auth_state_change(handler)
        return subscription.unsubscribe

    def create_user(self, email: str, password: str) -> str:
        """Provisions a confirmed account and returns its subject id.

        Raises:
            GatewayError: If provisioning is unavailable or fails.
        """
        if self._admin_client is None:
            raise GatewayError("account provisioning requires the service role key")
        try:
            response = self._admin_client.auth.admin.create_user(
                {"email": email, "password": password, "email_confirm": True}
            )
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"account creation failed: {type(e).__name__}") from e
        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise GatewayError("account creation returned no user")
        return str(user.id)

    def delete_user(self, subject_id: str) -> None:
        if self._admin_client is None:
            raise GatewayError("account removal requires the service role key")
        try:
            self._admin_client.auth.admin.delete_user(subject_id)
        except (AuthError, httpx.HTTPError) as e:
            raise GatewayError(f"account removal failed: {type(e).__name__}") from e
