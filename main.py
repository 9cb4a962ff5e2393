"""
This is the main entry point for the Nutri U Streamlit application.

This script handles the following key responsibilities:
- Sets the overall page configuration for the Streamlit app.
- Identifies the browser through a cookie, so each browser finds its own
  entries in the session cache.
- Builds the services (session resolver, clinic and admin services) once per
  browser session and keeps them in the session state.
- Restores the signed-in identity in two phases: the cached identity is shown
  immediately, and the remote session check runs after the page has rendered.
- Routes the user to the login page or to the dashboard for their role.
"""
# main.py

import logging

import streamlit as st

from nutriu.browser import identify_browser, remember_browser
from nutriu.config import configure_logging, load_settings
from nutriu.errors import ConfigurationError
from nutriu.services import build_services
import gui

logger = logging.getLogger("nutriu.main")

# Set the basic configuration for the Streamlit page.
st.set_page_config(
    page_title="Nutri U",
    layout="wide"
)

# Service Initialization
# The services are rebuilt after a logout; the browser id survives it.
if 'services' not in st.session_state:
    try:
        settings = load_settings()
        configure_logging(settings.log_level)
        if 'browser_key' not in st.session_state:
            st.session_state.browser_key, st.session_state.new_browser = identify_browser(settings.browser_cookie)
        services = build_services(settings, st.session_state.browser_key)
    except ConfigurationError as e:
        logger.error("Cannot start: %s", e)
        st.error("Nutri U is not configured. Please contact the administrator.")
        st.stop()
    services.resolver.start()
    services.resolver.load_cached()
    st.session_state.services = services
    st.session_state.needs_validation = True

services = st.session_state.services
resolver = services.resolver

if st.session_state.get('new_browser'):
    remember_browser(st.session_state.browser_key, services.settings.browser_cookie)

# Main App Router
if resolver.loading:
    gui.show_loading()
elif resolver.identity is None:
    gui.show_login_form(resolver)
else:
    gui.show_notices(resolver)
    gui.show_main_app(services)

# Confirm the cached identity once the first page is on screen.
if st.session_state.pop('needs_validation', False):
    before = resolver.identity
    resolver.validate_session()
    if resolver.identity != before or resolver.verified:
        st.rerun()
