"""Out-of-band delivery of one-time codes over SMS and email."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Mapping, Protocol

import requests

from marketauth.core.config import NotificationConfig
from marketauth.core.logging import mask_target
from marketauth.core.retry import DependencyTimeoutError, DependencyUnavailableError
from marketauth.core.targets import TargetChannel

LOGGER = logging.getLogger(__name__)


class NotificationTimeoutError(DependencyTimeoutError):
    """Gateway did not answer within the configured timeout."""

    dependency = "notification_gateway"


class NotificationUnavailableError(DependencyUnavailableError):
    """Gateway could not be reached or answered with a server error."""

    dependency = "notification_gateway"


class NotificationGateway(Protocol):
    """Delivers a code to a destination; ``False`` means the provider refused it."""

    def send(self, destination: str, code: str) -> bool: ...


def build_message(code: str, *, app_name: str, ttl_minutes: int) -> str:
    return (
        f"Your {app_name} verification code is: {code}. "
        f"This code will expire in {ttl_minutes} minutes. Do not share this code with anyone."
    )


class _HttpGateway(ABC):
    """Shared JSON-over-HTTP delivery for SMS and email providers."""

    channel = "http"

    def __init__(
        self,
        *,
        api_url: str,
        api_key: str,
        timeout_seconds: float,
        app_name: str,
        ttl_minutes: int,
        session: requests.Session | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._app_name = app_name
        self._ttl_minutes = ttl_minutes
        self._session = session or requests.Session()

    @abstractmethod
    def _payload(self, destination: str, message: str) -> dict[str, object]:
        """Provider-specific JSON body."""

    def send(self, destination: str, code: str) -> bool:
        """POST the message to the provider and report acceptance."""
        message = build_message(code, app_name=self._app_name, ttl_minutes=self._ttl_minutes)
        try:
            response = self._session.post(
                self._api_url,
                json=self._payload(destination, message),
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout_seconds,
            )
        except requests.Timeout as exc:
            raise NotificationTimeoutError(f"{self.channel} provider timed out") from exc
        except requests.ConnectionError as exc:
            raise NotificationUnavailableError(f"{self.channel} provider unreachable") from exc

        if response.status_code >= 500:
            raise NotificationUnavailableError(
                f"{self.channel} provider responded with status {response.status_code}"
            )
        if response.status_code >= 400:
            LOGGER.warning(
                "notification_rejected",
                extra={
                    "target": mask_target(destination),
                    "status_code": response.status_code,
                    "scope": self.channel,
                },
            )
            return False
        LOGGER.info(
            "notification_sent",
            extra={"target": mask_target(destination), "scope": self.channel},
        )
        return True


class HttpSmsGateway(_HttpGateway):
    """SMS provider reached through a generic JSON API."""

    channel = "sms"

    def __init__(self, *, sender_id: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._sender_id = sender_id

    def _payload(self, destination: str, message: str) -> dict[str, object]:
        return {"to": destination, "message": message, "sender": self._sender_id}


class HttpEmailGateway(_HttpGateway):
    """Transactional email provider reached through a JSON API."""

    channel = "email"

    def __init__(self, *, sender: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._sender = sender

    def _payload(self, destination: str, message: str) -> dict[str, object]:
        return {
            "from": self._sender,
            "to": [destination],
            "subject": f"{self._app_name} verification code",
            "text": message,
        }


class ConsoleGateway:
    """Development gateway that writes the code to the application log."""

    def __init__(self, channel: str) -> None:
        self._channel = channel

    def send(self, destination: str, code: str) -> bool:
        LOGGER.info(
            "development_otp code=%s",
            code,
            extra={"target": destination, "scope": self._channel},
        )
        return True


class ChannelRouter:
    """Picks the gateway matching the target channel encoded in the destination key."""

    def __init__(self, gateways: Mapping[TargetChannel, NotificationGateway]) -> None:
        self._gateways = dict(gateways)

    def send(self, destination: str, code: str) -> bool:
        channel = TargetChannel.EMAIL if "@" in destination else TargetChannel.PHONE
        gateway = self._gateways.get(channel)
        if gateway is None:
            raise NotificationUnavailableError(f"No gateway configured for {channel}")
        return gateway.send(destination, code)


def build_notification_gateway(config: NotificationConfig, *, otp_ttl_seconds: int) -> ChannelRouter:
    """Wire HTTP gateways where configured and console delivery elsewhere."""
    ttl_minutes = max(1, otp_ttl_seconds // 60)
    gateways: dict[TargetChannel, NotificationGateway] = {}
    if config.sms_api_url:
        gateways[TargetChannel.PHONE] = HttpSmsGateway(
            api_url=config.sms_api_url,
            api_key=config.sms_api_key,
            sender_id=config.sms_sender_id,
            timeout_seconds=config.timeout_seconds,
            app_name=config.app_name,
            ttl_minutes=ttl_minutes,
        )
    else:
        gateways[TargetChannel.PHONE] = ConsoleGateway("sms")
    if config.email_api_url:
        gateways[TargetChannel.EMAIL] = HttpEmailGateway(
            api_url=config.email_api_url,
            api_key=config.email_api_key,
            sender=config.email_sender,
            timeout_seconds=config.timeout_seconds,
            app_name=config.app_name,
            ttl_minutes=ttl_minutes,
        )
    else:
        gateways[TargetChannel.EMAIL] = ConsoleGateway("email")
    return ChannelRouter(gateways)
