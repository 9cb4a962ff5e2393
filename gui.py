"""
This module defines the graphical user interface (GUI) for the Nutri U application using Streamlit.

It includes functions for rendering the login page, the administrator console
(clinic statistics and nutritionist management) and the nutritionist workspace
(patients, appointments, diet plans, payments and profile).

The main entry point for the UI is `show_main_app`, which routes the signed-in
user to the view that matches their role. Every page reads the identity from the
session resolver and never writes it directly.
"""
# gui.py

import datetime
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
import streamlit as st

from nutriu.auth import BUSY_NOTICE, LoginStatus
from nutriu.errors import GatewayError, NutriUError, PermissionDenied, ValidationError
from nutriu.models import Role

logger = logging.getLogger("nutriu.gui")

UNAVAILABLE_MESSAGE = "The service is not available right now. Please try again in a moment."

MEAL_LABELS = {
    "breakfast": "Breakfast",
    "morning_snack": "Morning snack",
    "lunch": "Lunch",
    "afternoon_snack": "Afternoon snack",
    "dinner": "Dinner",
}


def _format_timestamp(value, tz_name=None):
    """Converts a timestamp into a human-readable time in the clinic's timezone.

    Args:
        value (datetime or str): An aware datetime or an ISO 8601 string.
        tz_name (str, optional): IANA timezone name. Defaults to the server's local zone.

    Returns:
        str: A formatted string (e.g., "Jan 01, 2025 • 14:30") or the original
             value if it cannot be parsed.
    """
    if not value:
        return "Unknown time"
    timestamp = value
    if not isinstance(timestamp, datetime.datetime):
        try:
            timestamp = datetime.datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return str(value)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)
    try:
        zone = ZoneInfo(tz_name) if tz_name else None
    except ZoneInfoNotFoundError:
        zone = None
    return timestamp.astimezone(zone).strftime("%b %d, %Y • %H:%M")


def _format_money(amount):
    return f"${amount:,.2f}"


def _show_error(error):
    """Shows a service error in the page. Validation messages are shown as written."""
    if isinstance(error, ValidationError):
        st.error(str(error))
    elif isinstance(error, PermissionDenied):
        st.error("You are not allowed to do that.")
    elif isinstance(error, GatewayError):
        st.error(UNAVAILABLE_MESSAGE)
    else:
        st.error("Something went wrong. Please try again.")


def show_notices(resolver):
    """Displays the messages the resolver queued for the user since the last run."""
    for notice in resolver.pop_notices():
        st.warning(notice)


def show_loading():
    """Displays a placeholder while the signed-in identity is being restored."""
    st.info("Restoring your session...")


# Authentication Pages
def show_login_form(resolver):
    """Displays the login form and handles user authentication.

    Args:
        resolver: The `SessionResolver` of the current browser session.
    """
    col1, col2, col3 = st.columns([1, 2, 1])
    with col2:
        st.markdown("<h1 style='text-align: center;'>Nutri U</h1>", unsafe_allow_html=True)
        st.markdown("<p style='text-align: center;'>Nutrition clinic management.</p>", unsafe_allow_html=True)
        with st.form("login_form"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            submitted = st.form_submit_button("Login", use_container_width=True)

            if submitted:
                if not email or not password:
                    st.error("Email and password are required.")
                    return
                with st.spinner("Logging in..."):
                    result = resolver.login(email.strip(), password)
                if result:
                    st.session_state.page = None
                    st.rerun()
                elif result.status is LoginStatus.INVALID_CREDENTIALS:
                    st.error("Invalid email or password.")
                elif result.status is LoginStatus.BUSY:
                    st.warning(BUSY_NOTICE)
                elif result.status is LoginStatus.UNAVAILABLE:
                    st.error(UNAVAILABLE_MESSAGE)
                # NO_PROFILE is reported through the resolver's notices.
        show_notices(resolver)


# Main Application UI
def show_main_app(services):
    """
    The main application router that displays the correct UI based on the user's role.

    Args:
        services: The `Services` bundle of the current browser session.
    """
    resolver = services.resolver
    user = resolver.identity
    if user is None:
        return

    if 'page' not in st.session_state:
        st.session_state.page = None
    # Reset the page when a different role signs in.
    if st.session_state.get('current_role') != user.role:
        st.session_state.page = None
        st.session_state.current_role = user.role

    with st.sidebar:
        st.markdown(f"**{user.full_name or user.email}**")
        st.caption("Administrator" if user.role is Role.ADMINISTRATOR else "Nutritionist")
        if not resolver.verified:
            st.caption("Offline copy of your profile. Some data may be out of date.")
        if st.button("Log Out", key="logout_btn", use_container_width=True):
            with st.spinner("Logging out..."):
                resolver.logout()
            # The next run builds fresh services for this browser.
            services.close()
            st.session_state.pop("services", None)
            st.session_state.page = None
            st.session_state.current_role = None
            st.rerun()

    menu_placeholder = st.empty()

    def _show_main_menu(options, title):
        """
        Renders the main menu for a given user role.

        Args:
            options (list): Tuples of label, page key and description.
            title (str): The title of the menu.
        """
        with menu_placeholder.container():
            st.markdown(f"## {title}: {user.full_name or user.email}")
            st.divider()
            for idx, (label, value, description) in enumerate(options):
                if st.button(label, key=f"{user.role.value}_menu_btn_{idx}", use_container_width=True):
                    st.session_state.page = value
                    st.rerun()
                st.caption(description)

    def _show_back_button():
        if st.button("← Back to Main Menu"):
            st.session_state.page = None
            st.rerun()

    if user.role is Role.ADMINISTRATOR:
        pages = {
            "admin_dashboard": _render_admin_dashboard,
            "admin_nutritionists": _render_nutritionists_page,
            "admin_profile": _render_profile_page,
        }
        menu_items = [
            ("Clinic Overview", "admin_dashboard", "Patients, nutritionists, appointments and this month's income."),
            ("Nutritionists", "admin_nutritionists", "Register, edit and remove nutritionists."),
            ("My Profile", "admin_profile", "Update your contact details."),
        ]
        title = "Admin Console"
    else:
        pages = {
            "nutri_dashboard": _render_nutritionist_dashboard,
            "nutri_patients": _render_patients_page,
            "nutri_appointments": _render_appointments_page,
            "nutri_diets": _render_diets_page,
            "nutri_payments": _render_payments_page,
            "nutri_profile": _render_profile_page,
        }
        menu_items = [
            ("Dashboard", "nutri_dashboard", "Your patients, appointments and income at a glance."),
            ("My Patients", "nutri_patients", "Browse the patients assigned to you."),
            ("Appointments", "nutri_appointments", "Schedule new appointments and mark visits as completed."),
            ("Diet Plans", "nutri_diets", "Assign meal plans to your patients."),
            ("Payments", "nutri_payments", "Review collected and pending payments."),
            ("My Profile", "nutri_profile", "Update your professional details."),
        ]
        title = "Nutritionist Workspace"

    if st.session_state.page is None:
        _show_main_menu(menu_items, title)
        return
    menu_placeholder.empty()

    render_page = pages.get(st.session_state.page)
    if render_page is None:
        st.session_state.page = None
        st.rerun()
        return
    _show_back_button()
    try:
        render_page(services)
    except NutriUError as e:
        logger.warning("Page %s failed: %s", st.session_state.page, e)
        _show_error(e)


# Administrator pages
def _render_admin_dashboard(services):
    st.markdown("<h2 style='text-align: center;'>Clinic Overview</h2>", unsafe_allow_html=True)
    stats = services.admin.clinic_statistics()
    col1, col2, col3 = st.columns(3)
    col1.metric("Patients", stats["patients"])
    col2.metric("Nutritionists", stats["nutritionists"])
    col3.metric("Appointments today", stats["appointments_today"])
    col4, col5 = st.columns(2)
    col4.metric("Appointments this month", stats["appointments_this_month"])
    col5.metric("Income this month", _format_money(stats["income_this_month"]))


def _nutritionist_form_fields(prefix, current=None):
    """Renders the nutritionist form inputs and returns the entered values."""
    current = current or {}
    form = {
        "given_name": st.text_input("Name", value=current.get("given_name", ""), key=f"{prefix}_given"),
        "family_name": st.text_input("Surname", value=current.get("family_name", ""), key=f"{prefix}_family"),
        "username": st.text_input("Username", value=current.get("username", ""), key=f"{prefix}_username"),
        "email": st.text_input("Email", value=current.get("email", ""), key=f"{prefix}_email"),
        "phone": st.text_input("Phone (10 digits)", value=current.get("phone", ""), key=f"{prefix}_phone"),
        "consultation_fee": st.number_input(
            "Consultation fee",
            min_value=0.0,
            value=float(current.get("consultation_fee") or 0.0),
            step=50.0,
            key=f"{prefix}_fee",
        ),
    }
    return form


def _render_nutritionists_page(services):
    """Renders the nutritionist management page for administrators.

    Args:
        services: The `Services` bundle of the current browser session.
    """
    admin = services.admin
    st.markdown("<h2 style='text-align: center;'>Nutritionists</h2>", unsafe_allow_html=True)

    nutritionists = admin.list_nutritionists()
    if not nutritionists:
        st.info("No nutritionists registered yet.")
    for nutri in nutritionists:
        with st.expander(f"**{nutri.full_name}** ({nutri.username or nutri.email})"):
            with st.form(f"edit_nutri_{nutri.role_profile_id}"):
                form = _nutritionist_form_fields(f"edit_{nutri.role_profile_id}", {
                    "given_name": nutri.given_name,
                    "family_name": nutri.family_name,
                    "username": nutri.username,
                    "email": nutri.email,
                    "phone": nutri.phone,
                    "consultation_fee": nutri.consultation_fee,
                })
                if st.form_submit_button("Save Changes"):
                    try:
                        if admin.update_nutritionist(nutri.role_profile_id, form):
                            st.success("Nutritionist updated.")
                            st.rerun()
                        else:
                            st.error("The nutritionist could not be updated.")
                    except NutriUError as e:
                        _show_error(e)

            confirm = st.checkbox("I understand this cannot be undone.", key=f"confirm_delete_{nutri.role_profile_id}")
            if st.button("Delete Nutritionist", key=f"delete_{nutri.role_profile_id}", disabled=not confirm):
                try:
                    if admin.delete_nutritionist(nutri.role_profile_id):
                        st.success("Nutritionist deleted.")
                        st.rerun()
                    else:
                        st.error("The nutritionist could not be deleted.")
                except NutriUError as e:
                    _show_error(e)

    st.divider()
    st.markdown("##### Register a Nutritionist")
    with st.form("register_nutri_form"):
        form = _nutritionist_form_fields("new")
        form["password"] = st.text_input("Password", type="password", key="new_password")
        if st.form_submit_button("Register"):
            try:
                admin.register_nutritionist(form)
                st.success(f"Nutritionist '{form['username']}' registered.")
            except NutriUError as e:
                _show_error(e)


# Nutritionist pages
def _render_nutritionist_dashboard(services):
    st.markdown("<h2 style='text-align: center;'>Dashboard</h2>", unsafe_allow_html=True)
    summary = services.clinic.dashboard_summary()
    col1, col2, col3 = st.columns(3)
    col1.metric("Patients", summary["patients"])
    col2.metric("Active appointments", summary["active_appointments"])
    col3.metric("Completed appointments", summary["completed_appointments"])
    col4, col5 = st.columns(2)
    col4.metric("Income this month", _format_money(summary["income_this_month"]))
    col5.metric("Total appointments", summary["total_appointments"])


def _render_patients_page(services):
    st.markdown("<h2 style='text-align: center;'>My Patients</h2>", unsafe_allow_html=True)
    patients = services.clinic.list_patients()
    if not patients:
        st.info("No patients are assigned to you yet.")
        return
    search = st.text_input("Search by name or email")
    if search:
        needle = search.lower()
        patients = [p for p in patients if needle in p.full_name.lower() or needle in p.email.lower()]
    df = pd.DataFrame([{"Name": p.full_name, "Email": p.email} for p in patients])
    st.dataframe(df, use_container_width=True, hide_index=True)


def _patient_selector(patients, key):
    options = {p.patient_id: p.full_name or p.email for p in patients}
    return st.selectbox("Patient", options=list(options), format_func=options.get, key=key)


def _render_appointments_page(services):
    """Renders the appointments page: scheduling form, active and completed lists.

    Args:
        services: The `Services` bundle of the current browser session.
    """
    clinic = services.clinic
    tz_name = services.settings.timezone
    st.markdown("<h2 style='text-align: center;'>Appointments</h2>", unsafe_allow_html=True)

    patients = clinic.list_patients()
    with st.expander("Schedule an Appointment"):
        if not patients:
            st.info("You need an assigned patient to schedule appointments.")
        else:
            with st.form("schedule_form"):
                patient_id = _patient_selector(patients, "schedule_patient")
                day = st.date_input("Date", min_value=datetime.date.today())
                hour = st.time_input("Time", value=datetime.time(9, 0))
                if st.form_submit_button("Schedule"):
                    zone = ZoneInfo(tz_name) if tz_name else None
                    when = datetime.datetime.combine(day, hour, tzinfo=zone)
                    try:
                        clinic.schedule_appointment(patient_id, when)
                        st.success("Appointment scheduled.")
                    except NutriUError as e:
                        _show_error(e)

    active, completed = clinic.split_appointments(clinic.list_appointments())
    st.subheader("Active")
    if not active:
        st.info("No active appointments.")
    for appt in active:
        col1, col2 = st.columns([4, 1])
        with col1:
            st.markdown(f"**{appt.patient_name}** · {_format_timestamp(appt.scheduled_at, tz_name)}")
            st.caption(f"{appt.status.capitalize()} · {_format_money(appt.amount)}")
        with col2:
            if st.button("Complete", key=f"complete_{appt.appointment_id}"):
                try:
                    if clinic.complete_appointment(appt.appointment_id):
                        st.rerun()
                    else:
                        st.error("The appointment could not be updated.")
                except NutriUError as e:
                    _show_error(e)

    st.subheader("Completed")
    if not completed:
        st.info("No completed appointments yet.")
    else:
        df = pd.DataFrame([
            {
                "Patient": a.patient_name,
                "Date": _format_timestamp(a.scheduled_at, tz_name),
                "Paid": "Yes" if a.paid else "No",
            }
            for a in completed
        ])
        st.dataframe(df, use_container_width=True, hide_index=True)


def _render_diets_page(services):
    clinic = services.clinic
    st.markdown("<h2 style='text-align: center;'>Diet Plans</h2>", unsafe_allow_html=True)

    patients = clinic.list_patients()
    names = {p.patient_id: p.full_name for p in patients}
    if patients:
        with st.form("diet_form"):
            patient_id = _patient_selector(patients, "diet_patient")
            meals = {name: st.text_area(label, key=f"diet_{name}") for name, label in MEAL_LABELS.items()}
            calories = st.number_input("Daily calories (0 for none)", min_value=0, step=50, value=0)
            if st.form_submit_button("Assign Plan"):
                try:
                    clinic.assign_diet_plan(patient_id, meals, calories or None)
                    st.success("Diet plan assigned.")
                except NutriUError as e:
                    _show_error(e)
    else:
        st.info("You need an assigned patient to create diet plans.")

    st.subheader("Assigned Plans")
    plans = clinic.list_diet_plans()
    if not plans:
        st.info("No diet plans yet.")
    for plan in plans:
        title = names.get(plan.patient_id, f"Patient {plan.patient_id}")
        with st.expander(f"{title} · {_format_timestamp(plan.created_at, services.settings.timezone)}"):
            for name, text in plan.meals:
                st.markdown(f"**{MEAL_LABELS.get(name, name)}:** {text}")
            if plan.calories:
                st.caption(f"{plan.calories} kcal per day")


def _render_payments_page(services):
    clinic = services.clinic
    tz_name = services.settings.timezone
    st.markdown("<h2 style='text-align: center;'>Payments</h2>", unsafe_allow_html=True)
    appointments = clinic.list_appointments()
    summary = clinic.payment_summary(appointments)
    col1, col2, col3 = st.columns(3)
    col1.metric("Collected", _format_money(summary["collected"]))
    col2.metric("Pending", _format_money(summary["pending"]))
    col3.metric("Appointments this month", summary["appointments_this_month"])

    if not appointments:
        st.info("No appointments yet.")
        return
    df = pd.DataFrame([
        {
            "Patient": a.patient_name,
            "Date": _format_timestamp(a.scheduled_at, tz_name),
            "Status": a.status,
            "Amount": a.amount,
            "Paid": a.paid,
        }
        for a in appointments
    ])
    st.dataframe(df, use_container_width=True, hide_index=True)


def _changed(current, value):
    # Unset optional fields come back from the widgets as "" or 0.0.
    if current is None:
        return bool(value)
    return current != value


def _render_profile_page(services):
    """Renders the user profile page for viewing and editing personal details.

    Args:
        services: The `Services` bundle of the current browser session.
    """
    resolver = services.resolver
    user = resolver.identity
    st.markdown("<h2 style='text-align: center;'>My Profile</h2>", unsafe_allow_html=True)

    with st.form("profile_form"):
        st.write(f"**Email:** {user.email}")
        changes = {
            "given_name": st.text_input("Name", value=user.given_name),
            "family_name": st.text_input("Surname", value=user.family_name),
            "phone": st.text_input("Phone", value=user.phone),
        }
        if user.role is Role.NUTRITIONIST:
            changes["username"] = st.text_input("Username", value=user.username)
            changes["consultation_fee"] = st.number_input(
                "Consultation fee", min_value=0.0, step=50.0, value=float(user.consultation_fee or 0.0)
            )
            changes["bio"] = st.text_area("Bio", value=user.bio or "")

        if st.form_submit_button("Update Profile"):
            changes = {name: value for name, value in changes.items() if _changed(getattr(user, name), value)}
            with st.spinner("Updating profile..."):
                if resolver.update_profile(changes):
                    st.success("Profile updated successfully!")
                else:
                    st.error("Failed to update profile.")
    show_notices(resolver)
