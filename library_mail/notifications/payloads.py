"""Template context resolution for notification payloads.

Payload display fields are optional. This module fills the gaps with the
placeholder values members see when data is missing, so templates can
reference every variable unconditionally.
"""

from typing import Dict

from library_mail.domain.models import NotificationPayload

DEFAULT_MEMBER_NAME = "Member"
DEFAULT_BOOK_TITLE = "Book Title"
DEFAULT_BOOK_AUTHOR = "Author Name"
DEFAULT_LIBRARY_NAME = "Library"
DEFAULT_DUE_DATE = "Tomorrow"
DEFAULT_DAYS_OVERDUE = 1


def _or_default(value, default):
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return value


def build_template_context(payload: NotificationPayload) -> Dict:
    """Build the template context for a notification payload.

    Args:
        payload: Any payload variant

    Returns:
        Dictionary with the keys every template may use:
        - kind, recipient
        - member_name, book_title, book_author, library_name
        - due_date (borrowed, due and overdue reminders)
        - new_due_date (extensions)
        - days_overdue (overdue reminders)
    """
    context = {
        "kind": payload.kind,
        "recipient": payload.to,
        "member_name": _or_default(payload.member_name, DEFAULT_MEMBER_NAME),
        "book_title": _or_default(payload.book_title, DEFAULT_BOOK_TITLE),
        "book_author": _or_default(payload.book_author, DEFAULT_BOOK_AUTHOR),
        "library_name": _or_default(payload.library_name, DEFAULT_LIBRARY_NAME),
        "due_date": DEFAULT_DUE_DATE,
        "new_due_date": DEFAULT_DUE_DATE,
        "days_overdue": DEFAULT_DAYS_OVERDUE,
    }

    if hasattr(payload, "due_date"):
        context["due_date"] = _or_default(payload.due_date, DEFAULT_DUE_DATE)
    if hasattr(payload, "new_due_date"):
        context["new_due_date"] = _or_default(payload.new_due_date, DEFAULT_DUE_DATE)
    if hasattr(payload, "days_overdue"):
        context["days_overdue"] = _or_default(payload.days_overdue, DEFAULT_DAYS_OVERDUE)

    return context
