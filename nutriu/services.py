"""
Wiring of the Nutri U services from settings.

`build_services` creates the Supabase clients, the gateway and auth adapters,
the encrypted local cache, the session resolver and the management services
that share its identity store. One graph is built per browser session and is
bound to the browser's slot in the shared cache file.
"""
# nutriu/services.py

import logging
from dataclasses import dataclass
from typing import Any, Optional

from nutriu.admin import AdminService
from nutriu.auth import SessionResolver
from nutriu.cache import LocalCache
from nutriu.clinic import ClinicService
from nutriu.config import Settings
from nutriu.encryption import get_encryptor
from nutriu.gateway import SupabaseAuth, SupabaseGateway, create_supabase_client

logger = logging.getLogger("nutriu.services")


@dataclass
class Services:
    resolver: SessionResolver
    clinic: ClinicService
    admin: AdminService
    settings: Settings

    def close(self) -> None:
        """Tears down the session-change subscription and the resolver's workers."""
        self.resolver.close()


def build_services(
    settings: Settings,
    browser_key: str,
    client: Optional[Any] = None,
    admin_client: Optional[Any] = None,
    auth: Optional[Any] = None,
    gateway: Optional[Any] = None,
) -> Services:
    """Builds the service graph for one browser session.

    Args:
        settings (Settings): Application settings.
        browser_key (str): Id of the browser; selects its slot in the session cache.
        client: Optional pre-built Supabase client (one per browser session).
        admin_client: Optional pre-built service-role client.
        auth: Optional authentication service used instead of `SupabaseAuth`.
        gateway: Optional persistence gateway used instead of `SupabaseGateway`.

    Returns:
        Services: The resolver and the management services.
    """
    if not browser_key:
        raise ValueError("a browser key is required")
    if client is None and (auth is None or gateway is None):
        settings.require_supabase()
        client = create_supabase_client(settings.supabase_url, settings.supabase_key)
    if auth is None:
        if admin_client is None and settings.service_role_key:
            admin_client = create_supabase_client(settings.supabase_url, settings.service_role_key)
        auth = SupabaseAuth(client, admin_client=admin_client)
    if gateway is None:
        gateway = SupabaseGateway(client)

    cache = LocalCache(settings.cache_file, get_encryptor(settings.key_file))
    resolver = SessionResolver(
        auth,
        gateway,
        cache,
        session_timeout=settings.session_timeout,
        lookup_timeout=settings.lookup_timeout,
        cache_slot=browser_key,
    )
    logger.debug("Services built (provisioning=%s)", getattr(auth, "can_provision", False))
    return Services(
        resolver=resolver,
        clinic=ClinicService(gateway, resolver.store),
        admin=AdminService(gateway, resolver.store, auth=auth),
        settings=settings,
    )
