"""
Alert Service

Routes client notifications through one of three channels:
  - email:    POST {to, subject, message, payload} to the email relay
  - whatsapp: POST {to, message, payload} to the whatsapp relay
  - webhook:  POST the raw payload straight to the client's URL

Each channel is a small adapter with its own target normalization,
validation and request building. ``dispatch`` never raises; delivery
problems come back as ``DispatchResult(delivered=False, reason=...)``.
"""
import asyncio
import enum
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from app.config import get_settings
from app.utils.logger import log
from app.utils.retry import calculate_backoff, is_retryable_error

settings = get_settings()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")


class AlertChannel(str, enum.Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    WEBHOOK = "webhook"


class Outcome(str, enum.Enum):
    """Result of an on-demand operation."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class AlertTargetError(ValueError):
    """Alert channel/target rejected by validation."""


@dataclass
class DispatchResult:
    """Tracks one dispatch for auditing."""
    delivered: bool = False
    channel: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    status_code: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivered": self.delivered,
            "channel": self.channel,
            "reason": self.reason,
            "attempts": self.attempts,
            "statusCode": self.status_code,
            "errors": self.errors[:5],
        }


@dataclass
class AlertSendResult:
    """Outcome of a manual alert, webhook test or KPI send."""
    outcome: Outcome
    channel: Optional[str] = None
    target: Optional[str] = None
    reason: Optional[str] = None
    dispatch: Optional[DispatchResult] = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ok": self.ok,
            "channel": self.channel,
            "target": self.target,
            "reason": self.reason,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
        }


# Channel adapters

class ChannelAdapter:
    channel: AlertChannel
    missing_target_reason = "Alert target is required"

    def normalize_target(self, target: Any, webhook_url: Any = None) -> str:
        return str(target or "").strip()

    def validate_format(self, target: str) -> Optional[str]:
        return None

    def validate(self, target: str) -> Optional[str]:
        if not target:
            return self.missing_target_reason
        return self.validate_format(target)

    def build_request(self, target: str, subject: str, message: str, payload: Any) -> Tuple[Optional[str], Any]:
        """Return ``(url, body)``; a None url means the relay is not configured."""
        raise NotImplementedError


class EmailChannel(ChannelAdapter):
    channel = AlertChannel.EMAIL
    missing_target_reason = "Email target is required"

    def validate_format(self, target: str) -> Optional[str]:
        if not EMAIL_PATTERN.match(target):
            return "Invalid email target format"
        return None

    def build_request(self, target, subject, message, payload):
        body = {
            "to": target,
            "subject": subject or settings.alert_default_subject,
            "message": message,
            "payload": payload,
        }
        return settings.alert_email_webhook_url or None, body


class WhatsappChannel(ChannelAdapter):
    channel = AlertChannel.WHATSAPP
    missing_target_reason = "WhatsApp target is required"

    def normalize_target(self, target, webhook_url=None):
        digits = re.sub(r"[^\d+]", "", str(target or ""))
        if digits.startswith("00"):
            digits = "+" + digits[2:]
        return digits

    def validate_format(self, target):
        if not PHONE_PATTERN.match(target):
            return "Invalid WhatsApp number format. Use +5511999999999"
        return None

    def build_request(self, target, subject, message, payload):
        body = {"to": target, "message": message, "payload": payload}
        return settings.alert_whatsapp_webhook_url or None, body


class WebhookChannel(ChannelAdapter):
    channel = AlertChannel.WEBHOOK
    missing_target_reason = "Webhook target is required"

    def normalize_target(self, target, webhook_url=None):
        return str(target or webhook_url or "").strip()

    def validate_format(self, target):
        try:
            parsed = urlparse(target)
        except ValueError:
            return "Invalid webhook URL format"
        if parsed.scheme not in ("http", "https"):
            if parsed.scheme and parsed.netloc:
                return "Webhook target must use http or https"
            return "Invalid webhook URL format"
        if not parsed.netloc:
            return "Invalid webhook URL format"
        return None

    def build_request(self, target, subject, message, payload):
        return target, payload


CHANNELS: Dict[AlertChannel, ChannelAdapter] = {
    AlertChannel.EMAIL: EmailChannel(),
    AlertChannel.WHATSAPP: WhatsappChannel(),
    AlertChannel.WEBHOOK: WebhookChannel(),
}


def normalize_alert_channel(value: Any) -> Optional[AlertChannel]:
    """Case-insensitive channel lookup; anything unknown is None."""
    if isinstance(value, AlertChannel):
        return value
    try:
        return AlertChannel(str(value or "").strip().lower())
    except ValueError:
        return None


def normalize_alert_target(channel: Any, target: Any, webhook_url: Any = None) -> str:
    channel = normalize_alert_channel(channel)
    if channel is None:
        return str(target or "").strip()
    return CHANNELS[channel].normalize_target(target, webhook_url)


def validate_alert_target(channel: Any, target: Any) -> Optional[str]:
    """Human-readable reason the target is unusable, or None. No side effects."""
    channel = normalize_alert_channel(channel)
    if channel is None:
        return "Invalid alertChannel. Use email, whatsapp or webhook."
    return CHANNELS[channel].validate(str(target or "").strip())


class AlertService:
    """
    Delivers alert messages with retry on transient relay failures.
    """

    RETRY_BASE_DELAY = 1.0  # seconds
    RETRY_MAX_DELAY = 5.0  # seconds

    def __init__(self, timeout_seconds: Optional[float] = None, max_attempts: int = 2):
        self.timeout_seconds = timeout_seconds or settings.alert_timeout_seconds
        self.max_attempts = max(1, max_attempts)

        self.total_sent = 0
        self.total_failed = 0

    async def dispatch(
        self,
        channel: Any,
        target: Optional[str],
        subject: Optional[str],
        message: str,
        payload: Any,
    ) -> DispatchResult:
        """
        Send one notification.

        Returns:
            DispatchResult; ``reason`` is one of invalid_channel, missing_target,
            <channel>_webhook_not_configured, http_<status> or the transport error
        """
        resolved = normalize_alert_channel(channel)
        if resolved is None:
            return DispatchResult(channel=str(channel) if channel else None, reason="invalid_channel")

        result = DispatchResult(channel=resolved.value)
        target = str(target or "").strip()
        if not target:
            result.reason = "missing_target"
            return result

        url, body = CHANNELS[resolved].build_request(target, subject, message, payload)
        if not url:
            result.reason = f"{resolved.value}_webhook_not_configured"
            log.warning(f"{resolved.value} relay not configured, alert not sent")
            return result

        return await self._post_with_retry(url, body, result)

    async def _post_with_retry(self, url: str, body: Any, result: DispatchResult) -> DispatchResult:
        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.post(url, json=body) as response:
                        result.status_code = response.status
                        if response.status < 400:
                            result.delivered = True
                            result.reason = None
                            self.total_sent += 1
                            log.info(f"Alert delivered via {result.channel} (attempt {attempt})")
                            return result

                        error_str = f"http_{response.status}"
                        result.errors.append(error_str)
                        result.reason = error_str
                        retryable = response.status == 429 or response.status >= 500

            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                error_str = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                result.errors.append(error_str)
                result.reason = error_str
                retryable = is_retryable_error(e)

            if attempt >= self.max_attempts or not retryable:
                break

            delay = calculate_backoff(attempt, base_delay=self.RETRY_BASE_DELAY, max_delay=self.RETRY_MAX_DELAY)
            log.warning(f"{result.channel} alert attempt {attempt} failed: {result.reason}. Retrying in {delay:.1f}s...")
            await asyncio.sleep(delay)

        self.total_failed += 1
        log.error(f"{result.channel} alert failed after {result.attempts} attempts: {result.reason}")
        return result

    def get_stats(self) -> Dict[str, int]:
        return {"total_sent": self.total_sent, "total_failed": self.total_failed}


def resolve_channel_and_target(
    channel: Any,
    target: Any,
    webhook_url: Any = None,
) -> Tuple[AlertChannel, str]:
    """
    Normalize and validate a caller-supplied channel/target pair.

    Raises:
        AlertTargetError: with the human-readable reason
    """
    resolved = normalize_alert_channel(channel)
    if resolved is None:
        if channel:
            raise AlertTargetError("Invalid alertChannel. Use email, whatsapp or webhook.")
        raise AlertTargetError("Alert channel is required")
    normalized = normalize_alert_target(resolved, target, webhook_url)
    reason = validate_alert_target(resolved, normalized)
    if reason:
        raise AlertTargetError(reason)
    return resolved, normalized


_alert_service: Optional[AlertService] = None


def get_alert_service() -> AlertService:
    global _alert_service
    if _alert_service is None:
        _alert_service = AlertService()
    return _alert_service
