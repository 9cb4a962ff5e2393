"""
Pytest configuration file for the Nutri U test suite.

This file defines shared fixtures and in-memory collaborators used across the test files.
It includes:
- `FakeGateway`, a table store with the same interface as `SupabaseGateway`
  (equality and membership filters, ordering, limits, inserts and deletes),
  with injectable failures and delays.
- `FakeAuth`, an authentication service with the same interface as
  `SupabaseAuth`, backed by a credential table and emitting session events.
- Fixtures for an encrypted `LocalCache` in a temporary directory, the
  `SessionResolver` and the clinic and admin services built on top of it.
"""
import threading
import time
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from nutriu.admin import AdminService
from nutriu.auth import SessionResolver
from nutriu.cache import LocalCache
from nutriu.clinic import ClinicService
from nutriu.config import Settings
from nutriu.errors import CredentialError, GatewayError
from nutriu.models import Session, SessionEvent
from nutriu.services import Services

# Reference "now" used by every date-dependent test.
NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)

ADMIN_EMAIL = "ada@nutriu.mx"
NUTRI_EMAIL = "lucia@nutriu.mx"
GHOST_EMAIL = "ghost@nutriu.mx"
PASSWORD = "secret1"

# Browser ids as stored in the browser cookie.
BROWSER_A = "browser-aaaaaaaaaaaaaaaa"
BROWSER_B = "browser-bbbbbbbbbbbbbbbb"

ID_COLUMNS = {
    "administradores": "id_admin",
    "nutriologos": "id_nutriologo",
    "pacientes": "id_paciente",
    "citas": "id_cita",
    "dietas": "id_dieta",
    "pagos": "id_pago",
}


class FakeGateway:
    """In-memory stand-in for `SupabaseGateway`.

    Rows are plain dicts. Appointment rows are stored already joined with their
    `pacientes` and `pagos` data, the way the remote select returns them.
    """

    def __init__(self, tables=None):
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.calls = []
        self.failures = {}
        self.delay = 0.0

    def fail(self, action, table, error=None):
        """Makes every `action` on `table` raise `error` (a GatewayError by default)."""
        self.failures[(action, table)] = error or GatewayError(f"{action} on {table} failed")

    def calls_for(self, action, table=None):
        return [c for c in self.calls if c[0] == action and (table is None or c[1] == table)]

    def _enter(self, action, table, **details):
        self.calls.append((action, table, details))
        if self.delay:
            time.sleep(self.delay)
        error = self.failures.get((action, table)) or self.failures.get((action, "*"))
        if error is not None:
            raise error

    @staticmethod
    def _matches(row, filters, in_filters):
        for column, value in (filters or {}).items():
            if row.get(column) != value:
                return False
        for column, values in (in_filters or {}).items():
            if row.get(column) not in list(values):
                return False
        return True

    def select(self, table, columns="*", filters=None, in_filters=None, order=None, descending=False, limit=None):
        self._enter("select", table, columns=columns, filters=filters, in_filters=in_filters, limit=limit)
        rows = [r for r in self.tables.get(table, []) if self._matches(r, filters, in_filters)]
        if order:
            rows.sort(key=lambda r: str(r.get(order) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    def update(self, table, values, filters):
        self._enter("update", table, values=values, filters=filters)
        updated = []
        for row in self.tables.get(table, []):
            if self._matches(row, filters, None):
                row.update(values)
                updated.append(dict(row))
        return updated

    def insert(self, table, values):
        self._enter("insert", table, values=values)
        row = dict(values)
        id_column = ID_COLUMNS.get(table)
        rows = self.tables.setdefault(table, [])
        if id_column and id_column not in row:
            row[id_column] = max((r.get(id_column) or 0 for r in rows), default=0) + 1
        rows.append(row)
        return [dict(row)]

    def delete(self, table, filters):
        self._enter("delete", table, filters=filters)
        rows = self.tables.get(table, [])
        removed = [r for r in rows if self._matches(r, filters, None)]
        self.tables[table] = [r for r in rows if not self._matches(r, filters, None)]
        return [dict(r) for r in removed]


class FakeAuth:
    """In-memory stand-in for `SupabaseAuth`.

    Signing in and out emits SIGNED_IN / SIGNED_OUT to the subscribers, the way
    the Supabase client does. Accounts and issued refresh tokens live on the
    "server" and are shared with every client made by `new_client`; the current
    session belongs to one client only.
    """

    def __init__(self, users=None, refresh_tokens=None):
        self.users = {} if users is None else users
        self.refresh_tokens = {} if refresh_tokens is None else refresh_tokens
        self.session = None
        self.listeners = []
        self.failures = {}
        self.delays = {}
        self.can_provision = True
        self.deleted = []
        self.sign_in_started = threading.Event()
        self.gate = None

    def new_client(self):
        """Returns a fresh client of the same project, e.g. after a reload or restart."""
        return FakeAuth(users=self.users, refresh_tokens=self.refresh_tokens)

    def add_user(self, email, password, subject_id):
        self.users[email] = (password, subject_id)

    def _enter(self, name):
        delay = self.delays.get(name)
        if delay:
            time.sleep(delay)
        error = self.failures.get(name)
        if error is not None:
            raise error

    def emit(self, event, session=None):
        for callback in list(self.listeners):
            callback(event, session)

    def _issue(self, subject_id, email=""):
        refresh_token = f"refresh-{subject_id}-{len(self.refresh_tokens) + 1}"
        self.refresh_tokens[refresh_token] = (subject_id, email)
        return Session(subject_id=subject_id, email=email, access_token="token", refresh_token=refresh_token)

    def get_current_session(self):
        self._enter("get_current_session")
        return self.session

    def resume_session(self, access_token, refresh_token):
        self._enter("resume_session")
        stored = self.refresh_tokens.get(refresh_token)
        if stored is None:
            raise CredentialError("session_expired")
        self.session = Session(subject_id=stored[0], email=stored[1], access_token=access_token,
                               refresh_token=refresh_token)
        self.emit(SessionEvent.SIGNED_IN, self.session)
        return self.session

    def sign_in_with_password(self, email, password):
        self.sign_in_started.set()
        if self.gate is not None:
            self.gate.wait(2)
        self._enter("sign_in_with_password")
        stored = self.users.get(email)
        if stored is None or stored[0] != password:
            raise CredentialError("invalid_credentials")
        self.session = self._issue(stored[1], email)
        self.emit(SessionEvent.SIGNED_IN, self.session)
        return self.session

    def sign_out(self):
        self._enter("sign_out")
        if self.session is not None:
            self.refresh_tokens.pop(self.session.refresh_token, None)
        self.session = None
        self.emit(SessionEvent.SIGNED_OUT, None)

    def on_session_change(self, callback):
        self.listeners.append(callback)

        def unsubscribe():
            if callback in self.listeners:
                self.listeners.remove(callback)

        return unsubscribe

    def create_user(self, email, password):
        self._enter("create_user")
        subject_id = f"auth-{len(self.users) + 1}"
        self.add_user(email, password, subject_id)
        return subject_id

    def delete_user(self, subject_id):
        self._enter("delete_user")
        self.deleted.append(subject_id)
        self.users = {e: v for e, v in self.users.items() if v[1] != subject_id}


def _appointment(appointment_id, when, status, patient, nutritionist_id=7, payments=()):
    return {
        "id_cita": appointment_id,
        "fecha_hora": when,
        "estado": status,
        "id_paciente": patient["id_paciente"],
        "id_nutriologo": nutritionist_id,
        "pacientes": {"nombre": patient["nombre"], "apellido": patient["apellido"], "correo": patient["correo"]},
        "pagos": [dict(p) for p in payments],
    }


def seed_tables():
    """Returns the clinic data shared by the tests."""
    patients = [
        {"id_paciente": 10, "nombre": "Mario", "apellido": "Ruiz", "correo": "mario@example.com"},
        {"id_paciente": 11, "nombre": "Sofia", "apellido": "Lara", "correo": "sofia@example.com"},
        {"id_paciente": 12, "nombre": "Ines", "apellido": "Mora", "correo": "ines@example.com"},
    ]
    mario, sofia, ines = patients
    return {
        "administradores": [
            {"id_admin": 1, "nombre": "Ada", "apellido": "Admin", "correo": ADMIN_EMAIL,
             "numero_celular": "6641234567", "id_auth_user": "admin-1"},
        ],
        "nutriologos": [
            {"id_nutriologo": 7, "nombre": "Lucia", "apellido": "Vega", "correo": NUTRI_EMAIL,
             "numero_celular": "6647654321", "nombre_usuario": "lucia", "tarifa_consulta": 500,
             "biografia": "Sports nutrition", "foto_perfil": None, "id_auth_user": "nutri-1"},
            {"id_nutriologo": 8, "nombre": "Raul", "apellido": "Soto", "correo": "raul@nutriu.mx",
             "numero_celular": "6640000000", "nombre_usuario": "raul", "tarifa_consulta": 600,
             "biografia": None, "foto_perfil": None, "id_auth_user": "nutri-2"},
        ],
        "pacientes": patients,
        "paciente_nutriologo": [
            {"id_paciente": 10, "id_nutriologo": 7, "activo": True},
            {"id_paciente": 11, "id_nutriologo": 7, "activo": True},
            {"id_paciente": 12, "id_nutriologo": 7, "activo": False},
            {"id_paciente": 12, "id_nutriologo": 8, "activo": True},
        ],
        "citas": [
            _appointment(100, "2025-03-10T16:00:00+00:00", "completada", mario,
                         payments=[{"monto": 500, "estado": "completado"}]),
            _appointment(101, "2025-03-20T17:00:00+00:00", "pendiente", sofia),
            _appointment(102, "2025-02-05T15:00:00+00:00", "confirmada", mario,
                         payments=[{"monto": 450, "estado": "pendiente"}]),
            _appointment(103, "2025-03-01T15:00:00+00:00", "cancelada", sofia),
            _appointment(200, "2025-03-15T18:00:00+00:00", "pendiente", ines, nutritionist_id=8),
        ],
        "pagos": [
            {"id_pago": 1, "monto": 500, "estado": "completado", "fecha_pago": "2025-03-10T17:00:00+00:00"},
            {"id_pago": 2, "monto": 450, "estado": "pendiente", "fecha_pago": None},
            {"id_pago": 3, "monto": 300, "estado": "completado", "fecha_pago": "2025-02-01T10:00:00+00:00"},
        ],
        "dietas": [],
    }


@pytest.fixture
def encryptor():
    """Provides a Fernet instance with a throwaway key."""
    return Fernet(Fernet.generate_key())


@pytest.fixture
def cache(tmp_path, encryptor):
    """Provides a `LocalCache` stored in the test's temporary directory."""
    return LocalCache(str(tmp_path / "session_cache.json"), encryptor)


@pytest.fixture
def gateway():
    return FakeGateway(seed_tables())


@pytest.fixture
def auth():
    fake = FakeAuth()
    fake.add_user(ADMIN_EMAIL, PASSWORD, "admin-1")
    fake.add_user(NUTRI_EMAIL, PASSWORD, "nutri-1")
    fake.add_user(GHOST_EMAIL, PASSWORD, "ghost-1")
    return fake


@pytest.fixture
def resolver(auth, gateway, cache):
    """
    Provides a started `SessionResolver` wired to the fakes.

    Timeouts are short so that timeout tests stay fast; the resolver is
    closed after the test.
    """
    res = SessionResolver(auth, gateway, cache, session_timeout=1.0, lookup_timeout=1.0)
    res.start()
    yield res
    res.close()


@pytest.fixture
def nutritionist_resolver(resolver):
    """Provides a resolver with the nutritionist signed in."""
    assert resolver.login(NUTRI_EMAIL, PASSWORD)
    return resolver


@pytest.fixture
def admin_resolver(resolver):
    """Provides a resolver with the administrator signed in."""
    assert resolver.login(ADMIN_EMAIL, PASSWORD)
    return resolver


@pytest.fixture
def clinic(resolver, gateway):
    return ClinicService(gateway, resolver.store)


@pytest.fixture
def admin_service(resolver, gateway, auth):
    return AdminService(gateway, resolver.store, auth=auth)


@pytest.fixture
def services(resolver, clinic, admin_service, tmp_path):
    """Bundles the services the way `build_services` does, for the GUI tests."""
    settings = Settings(
        cache_file=str(tmp_path / "session_cache.json"),
        key_file=str(tmp_path / "secret.key"),
        timezone="UTC",
    )
    return Services(resolver=resolver, clinic=clinic, admin=admin_service, settings=settings)
