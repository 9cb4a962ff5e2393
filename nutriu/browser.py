"""
Browser identification for Nutri U.

Every browser gets a random id that is kept in a cookie. The id selects the
browser's slot in the local session cache, so a reload or a server restart
finds the session of the same browser and never the one of another visitor.
"""
# nutriu/browser.py

import logging
import re
import secrets
from typing import Dict, Optional, Tuple

import streamlit as st
import streamlit.components.v1 as components

from nutriu.config import DEFAULT_BROWSER_COOKIE

logger = logging.getLogger("nutriu.browser")

COOKIE_MAX_AGE = 30 * 24 * 60 * 60

_VALID_ID = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


def parse_cookie_header(cookie_header: str) -> Dict[str, str]:
    """
    Parse a Cookie header string into a dictionary.

    Args:
        cookie_header: Raw Cookie header value

    Returns:
        Dictionary of cookie names to values
    """
    cookies = {}
    for cookie in cookie_header.split(';'):
        cookie = cookie.strip()
        if '=' in cookie:
            key, value = cookie.split('=', 1)
            cookies[key.strip()] = value.strip()
    return cookies


def get_cookie(cookie_name: str) -> Optional[str]:
    """Returns a cookie of the current request, or None if the browser did not send it."""
    value = st.context.cookies.get(cookie_name)
    if value:
        return value
    cookie_header = st.context.headers.get("cookie", "")
    if cookie_header:
        return parse_cookie_header(cookie_header).get(cookie_name)
    return None


def identify_browser(cookie_name: str = DEFAULT_BROWSER_COOKIE) -> Tuple[str, bool]:
    """Returns the id of the current browser.

    A missing or malformed cookie yields a fresh random id.

    Returns:
        tuple: The id, and True if it still has to be stored with `remember_browser`.
    """
    value = get_cookie(cookie_name)
    if value and _VALID_ID.match(value):
        return value, False
    if value:
        logger.warning("Ignoring malformed %s cookie", cookie_name)
    return secrets.token_urlsafe(24), True


def remember_browser(browser_key: str, cookie_name: str = DEFAULT_BROWSER_COOKIE, max_age: int = COOKIE_MAX_AGE) -> None:
    """Stores the browser id in a cookie from a zero-height component."""
    if not _VALID_ID.match(browser_key):
        raise ValueError("invalid browser id")
    components.html(
        "<script>"
        f"document.cookie = '{cookie_name}={browser_key}; max-age={max_age}; path=/; SameSite=Strict';"
        "</script>",
        height=0,
    )
