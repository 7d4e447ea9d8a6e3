"""Email delivery through a transactional email HTTP API.

``EmailDeliveryClient`` performs exactly one provider call per ``send`` and
never retries; retry decisions belong to the worker pool, which reads the
``retryable`` flag on the returned ``DeliveryResult``.
"""

import logging
from typing import Optional

import requests
from email_validator import EmailNotValidError, validate_email

from library_mail.config.environment import EnvironmentConfig
from library_mail.logging import get_logger

from .models import DeliveryError, DeliveryResult, RenderedEmail

logger = get_logger(__name__, component="delivery")

# Client errors that are worth another attempt
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def validate_recipient(address: str) -> str:
    """Validate and normalize a recipient email address.

    Args:
        address: Email address

    Returns:
        Normalized address

    Raises:
        DeliveryError: If the address is not a valid email address
    """
    try:
        validated = validate_email(address.strip(), check_deliverability=False)
    except EmailNotValidError as e:
        raise DeliveryError(f"Invalid recipient address '{address}': {e}") from e
    return validated.normalized


def is_retryable_status(status_code: int) -> bool:
    """Server errors, timeouts and rate limits are retryable; other 4xx are not."""
    return status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES


class EmailDeliveryClient:
    """Thin client for a Resend-compatible ``POST /emails`` endpoint.

    Attributes:
        api_url: Provider base URL
        sender: "From" address
        timeout: HTTP request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com",
        timeout: float = 30,
        user_agent: str = "LibraryMail/1.0",
        session: Optional[requests.Session] = None,
    ):
        """Initialize delivery client.

        Args:
            api_key: Provider API key (sent as a bearer token)
            sender: "From" address, e.g. "City Library <noreply@library.example>"
            api_url: Provider base URL
            timeout: HTTP request timeout in seconds
            user_agent: User-Agent header for requests
            session: Preconfigured requests session (for tests)

        Raises:
            DeliveryError: If the API key or sender is empty
        """
        if not api_key or not api_key.strip():
            raise DeliveryError("Email API key cannot be empty")
        if not sender or not sender.strip():
            raise DeliveryError("Sender address cannot be empty")

        self.api_url = api_url.rstrip("/")
        self.sender = sender.strip()
        self.timeout = timeout

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_key.strip()}",
                "User-Agent": user_agent,
                "Content-Type": "application/json",
            }
        )

    @classmethod
    def from_config(
        cls, env_config: EnvironmentConfig, timeout: float = 30, user_agent: str = "LibraryMail/1.0"
    ) -> "EmailDeliveryClient":
        """Build a client from environment configuration."""
        return cls(
            api_key=env_config.email_api_key,
            sender=env_config.email_from,
            api_url=env_config.email_api_url,
            timeout=timeout,
            user_agent=user_agent,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.api_url}/emails"

    def send(self, to: str, email: RenderedEmail) -> DeliveryResult:
        """Send one email.

        Args:
            to: Recipient address
            email: Rendered subject and bodies

        Returns:
            DeliveryResult describing the provider's answer. Invalid
            recipients and 4xx rejections (other than 408/429) are reported
            as non-retryable.
        """
        try:
            recipient = validate_recipient(to)
        except DeliveryError as e:
            logger.error(
                str(e),
                extra={"event": "delivery.recipient.invalid", "recipient": to},
            )
            return DeliveryResult.failed(str(e), retryable=False)

        body = {
            "from": self.sender,
            "to": [recipient],
            "subject": email.subject,
            "html": email.html_body,
            "text": email.text_body,
        }

        logger.debug(
            f"POST {self.endpoint}",
            extra={
                "event": "delivery.request",
                "recipient": recipient,
                "subject": email.subject,
                "timeout": self.timeout,
            },
        )

        try:
            response = self._session.post(self.endpoint, json=body, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.warning(
                f"Email provider timed out after {self.timeout}s",
                extra={"event": "delivery.timeout", "recipient": recipient},
            )
            return DeliveryResult.failed(f"Request timed out: {e}")
        except requests.exceptions.RequestException as e:
            logger.warning(
                f"Email provider unreachable: {e}",
                extra={"event": "delivery.connection_error", "recipient": recipient},
            )
            return DeliveryResult.failed(f"Request failed: {e}")

        if response.status_code >= 400:
            retryable = is_retryable_status(response.status_code)
            error = f"HTTP {response.status_code}: {_error_detail(response)}"
            logger.log(
                logging.WARNING if retryable else logging.ERROR,
                f"Email provider rejected message: {error}",
                extra={
                    "event": "delivery.retryable_error" if retryable else "delivery.rejected",
                    "status_code": response.status_code,
                    "recipient": recipient,
                },
            )
            return DeliveryResult.failed(
                error, status_code=response.status_code, retryable=retryable
            )

        message_id = None
        try:
            data = response.json()
            if isinstance(data, dict):
                message_id = data.get("id")
        except ValueError:
            logger.debug(
                "Provider response was not JSON",
                extra={"event": "delivery.response.unparsed", "status_code": response.status_code},
            )

        logger.info(
            f"Email accepted by provider for {recipient}",
            extra={
                "event": "delivery.sent",
                "recipient": recipient,
                "message_id": message_id,
                "status_code": response.status_code,
            },
        )
        return DeliveryResult.sent(message_id, status_code=response.status_code)

    def close(self) -> None:
        self._session.close()


def _error_detail(response: requests.Response) -> str:
    """Extract the provider's error message, falling back to the reason phrase."""
    try:
        data = response.json()
    except ValueError:
        return response.reason or "unknown error"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)
