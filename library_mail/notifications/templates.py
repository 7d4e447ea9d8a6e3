"""Template rendering for notification emails using Jinja2.

Each notification kind has three templates in the
``library_mail.notifications.email_templates`` package:

    <kind>_subject.j2     single-line subject
    <kind>.html.j2        HTML body (extends _layout.html.j2)
    <kind>.txt.j2         plain text body
"""

from typing import Dict, Union

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError, select_autoescape

from library_mail.domain.models import NotificationKind, NotificationPayload
from library_mail.logging import get_logger

from .models import NotificationTemplateError, RenderedEmail
from .payloads import build_template_context

logger = get_logger(__name__, component="templates")


class TemplateRenderer:
    """Renders notification emails using Jinja2.

    Templates are cached by the Jinja2 environment for reuse across jobs.
    """

    def __init__(self, template_dir: str = "email_templates"):
        """Initialize template renderer with Jinja2 environment.

        Args:
            template_dir: Directory name within the library_mail.notifications package
        """
        self.env = Environment(
            loader=PackageLoader("library_mail.notifications", template_dir),
            # HTML bodies only; subjects and text bodies are sent verbatim
            autoescape=select_autoescape(enabled_extensions=("html.j2",), default=False),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

        logger.debug(f"Initialized TemplateRenderer with templates from {template_dir}")

    def render(self, kind: Union[NotificationKind, str], context: Dict) -> RenderedEmail:
        """Render subject, HTML and text bodies for a notification kind.

        Args:
            kind: Notification kind
            context: Template variables (see build_template_context)

        Returns:
            RenderedEmail with a single-line subject

        Raises:
            NotificationTemplateError: If the kind is unknown or rendering fails
        """
        try:
            kind_value = NotificationKind(kind).value
        except ValueError as e:
            raise NotificationTemplateError(f"Unknown notification kind: {kind!r}") from e

        try:
            subject_template = self.env.get_template(f"{kind_value}_subject.j2")
            html_template = self.env.get_template(f"{kind_value}.html.j2")
            text_template = self.env.get_template(f"{kind_value}.txt.j2")

            subject = " ".join(subject_template.render(context).split())
            html_body = html_template.render(context)
            text_body = text_template.render(context)

        except TemplateError as e:
            error_msg = f"Template rendering failed for {kind_value}: {e}"
            logger.error(
                error_msg,
                exc_info=True,
                extra={"event": "templates.render.failed", "kind": kind_value},
            )
            raise NotificationTemplateError(error_msg) from e

        logger.debug(
            f"Rendered {kind_value} email",
            extra={"event": "templates.render.succeeded", "kind": kind_value},
        )
        return RenderedEmail(subject=subject, html_body=html_body, text_body=text_body)

    def render_payload(self, payload: NotificationPayload) -> RenderedEmail:
        """Render a payload, substituting defaults for missing display fields."""
        return self.render(payload.kind, build_template_context(payload))
