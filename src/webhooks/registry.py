"""Webhook registrations and their delivery history"""

import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from src.core.clock import Clock, system_clock
from src.core.config import WebhookSettings
from src.models.webhook import (
    WILDCARD_EVENT,
    DeliveryAttempt,
    WebhookMetadata,
    WebhookRegistration,
    is_known_event,
)
from src.webhooks.exceptions import (
    DuplicateRegistration,
    RegistrationLimitExceeded,
    WebhookNotFound,
    WebhookUnauthorized,
    WebhookValidationError,
)

log = logging.getLogger(__name__)

_url_adapter = TypeAdapter(AnyHttpUrl)

METADATA_FIELDS = ("description", "headers", "timeout", "max_retries", "retry_delay")


def validate_url(url: Any):
    if not url or not isinstance(url, str):
        raise WebhookValidationError("url", "webhook URL is required")
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        raise WebhookValidationError("url", "must be an absolute http(s) URL") from None


def validate_events(events: Any):
    if not isinstance(events, (list, tuple)):
        raise WebhookValidationError("events", "must be a list")
    if not events:
        raise WebhookValidationError("events", "at least one event must be specified")
    invalid = [e for e in events if e != WILDCARD_EVENT and not is_known_event(e)]
    if invalid:
        raise WebhookValidationError("events", f"unknown events: {', '.join(map(str, invalid))}")


def validate_metadata(values: Dict[str, Any]):
    """Range checks for the per-target overrides"""
    description = values.get("description")
    if description is not None:
        if not isinstance(description, str):
            raise WebhookValidationError("description", "must be a string")
        if len(description) > 500:
            raise WebhookValidationError("description", "must be at most 500 characters")

    headers = values.get("headers")
    if headers is not None:
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise WebhookValidationError("headers", "must be a mapping of strings")

    timeout = values.get("timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, int) or not 1000 <= timeout <= 60000:
            raise WebhookValidationError("timeout", "must be between 1000ms and 60000ms")

    max_retries = values.get("max_retries")
    if max_retries is not None:
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or not 0 <= max_retries <= 10:
            raise WebhookValidationError("max_retries", "must be between 0 and 10")

    retry_delay = values.get("retry_delay")
    if retry_delay is not None:
        if isinstance(retry_delay, bool) or not isinstance(retry_delay, int) or retry_delay < 0:
            raise WebhookValidationError("retry_delay", "must be a non-negative number of milliseconds")


def validate_secret(secret: Any):
    if not isinstance(secret, str) or not 16 <= len(secret) <= 128:
        raise WebhookValidationError("secret", "must be between 16 and 128 characters")


class WebhookRegistry:
    """
    In-process store of webhook registrations

    All methods are synchronous and never await, so on the event loop each call
    is atomic with respect to deliveries running concurrently.
    """

    def __init__(self, settings: Optional[WebhookSettings] = None, clock: Optional[Clock] = None):
        self.settings = settings or WebhookSettings()
        self.clock = clock or system_clock
        self.webhooks: Dict[str, WebhookRegistration] = {}
        self.delivery_history: Dict[str, List[DeliveryAttempt]] = {}

    # Registration

    def register(
        self,
        principal_id: str,
        url: str,
        events: Optional[List[str]] = None,
        secret: Optional[str] = None,
        active: bool = True,
        description: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[int] = None,
    ) -> WebhookRegistration:
        """Validate and store a new webhook for ``principal_id``"""
        validate_url(url)
        if events is not None:
            validate_events(events)
        if secret is not None:
            validate_secret(secret)
        overrides = {
            "description": description,
            "headers": headers,
            "timeout": timeout,
            "max_retries": max_retries,
            "retry_delay": retry_delay,
        }
        validate_metadata(overrides)

        owned = self.get_principal_webhooks(principal_id)
        if len(owned) >= self.settings.max_webhooks_per_principal:
            raise RegistrationLimitExceeded(self.settings.max_webhooks_per_principal)
        if any(w.url == url for w in owned):
            raise DuplicateRegistration(url)

        now = self.clock.now()
        metadata = WebhookMetadata(
            description=description or "",
            headers=headers or {},
            timeout=timeout if timeout is not None else self.settings.timeout_ms,
            max_retries=max_retries if max_retries is not None else self.settings.max_retries,
            retry_delay=retry_delay if retry_delay is not None else self.settings.retry_delay_ms,
        )
        webhook = WebhookRegistration(
            id=f"wh_{uuid.uuid4().hex}",
            principal_id=principal_id,
            url=url,
            events=list(events) if events else [WILDCARD_EVENT],
            secret=secret or secrets.token_hex(32),
            active=active,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        self.webhooks[webhook.id] = webhook

        log.info(
            "Webhook %s registered for %s -> %s (events: %s)",
            webhook.id,
            principal_id,
            url,
            ", ".join(webhook.events),
        )
        return webhook

    def update(self, principal_id: str, webhook_id: str, updates: Dict[str, Any]) -> WebhookRegistration:
        """
        Partially update a webhook owned by ``principal_id``

        Only url, events, active and metadata can change. Metadata keys may be
        given either nested under ``metadata`` or at the top level; they are
        merged into the existing metadata.
        """
        webhook = self.get_owned(principal_id, webhook_id)

        metadata_updates = dict(updates.get("metadata") or {})
        for key in METADATA_FIELDS:
            if updates.get(key) is not None:
                metadata_updates[key] = updates[key]
        unknown = set(metadata_updates) - set(METADATA_FIELDS)
        if unknown:
            raise WebhookValidationError("metadata", f"unknown fields: {', '.join(sorted(unknown))}")
        validate_metadata(metadata_updates)

        changes: Dict[str, Any] = {}
        if updates.get("url") is not None:
            validate_url(updates["url"])
            if updates["url"] != webhook.url and any(
                w.url == updates["url"] for w in self.get_principal_webhooks(principal_id)
            ):
                raise DuplicateRegistration(updates["url"])
            changes["url"] = updates["url"]
        if updates.get("events") is not None:
            validate_events(updates["events"])
            changes["events"] = list(updates["events"])
        if updates.get("active") is not None:
            if not isinstance(updates["active"], bool):
                raise WebhookValidationError("active", "must be a boolean")
            changes["active"] = updates["active"]
        if metadata_updates:
            changes["metadata"] = webhook.metadata.model_copy(update=metadata_updates)

        changes["updated_at"] = self.clock.now()
        updated = webhook.model_copy(update=changes)
        self.webhooks[webhook_id] = updated

        log.info("Webhook %s updated by %s: %s", webhook_id, principal_id, sorted(k for k in updates))
        return updated

    def delete(self, principal_id: str, webhook_id: str):
        webhook = self.get_owned(principal_id, webhook_id)
        del self.webhooks[webhook_id]
        self.delivery_history.pop(webhook_id, None)
        log.info("Webhook %s deleted by %s (%s)", webhook_id, principal_id, webhook.url)

    # Lookup

    def get(self, webhook_id: str) -> Optional[WebhookRegistration]:
        return self.webhooks.get(webhook_id)

    def get_owned(self, principal_id: str, webhook_id: str) -> WebhookRegistration:
        """Fetch a webhook, enforcing that ``principal_id`` owns it"""
        webhook = self.webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFound(webhook_id)
        if webhook.principal_id != principal_id:
            raise WebhookUnauthorized(webhook_id)
        return webhook

    def get_principal_webhooks(self, principal_id: str) -> List[WebhookRegistration]:
        return [w for w in self.webhooks.values() if w.principal_id == principal_id]

    def list_webhooks(
        self,
        principal_id: Optional[str] = None,
        event: Optional[str] = None,
        active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        webhooks = list(self.webhooks.values())
        if principal_id:
            webhooks = [w for w in webhooks if w.principal_id == principal_id]
        if event:
            webhooks = [w for w in webhooks if w.matches(event)]
        if active is not None:
            webhooks = [w for w in webhooks if w.active == active]

        return {
            "webhooks": webhooks[offset:offset + limit],
            "total": len(webhooks),
            "limit": limit,
            "offset": offset,
        }

    def find_matching(self, event: str, principal_id: Optional[str] = None) -> List[WebhookRegistration]:
        """Active webhooks subscribed to ``event`` (directly or through the wildcard)"""
        return [
            w for w in self.webhooks.values()
            if w.active
            and (principal_id is None or w.principal_id == principal_id)
            and w.matches(event)
        ]

    # Delivery history

    def record_delivery(self, attempt: DeliveryAttempt):
        history = self.delivery_history.setdefault(attempt.webhook_id, [])
        history.append(attempt)
        overflow = len(history) - self.settings.history_limit
        if overflow > 0:
            del history[:overflow]

    def get_delivery_history(
        self,
        webhook_id: str,
        success: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        history = list(self.delivery_history.get(webhook_id, []))
        if success is not None:
            history = [d for d in history if d.success == success]

        return {
            "deliveries": history[offset:offset + limit],
            "total": len(history),
            "limit": limit,
            "offset": offset,
        }

    def prune_delivery_history(self, max_age_days: Optional[float] = None) -> int:
        """Remove attempts older than the retention period and drop emptied histories"""
        if max_age_days is None:
            max_age_days = self.settings.history_retention_days
        cutoff = self.clock.now() - timedelta(days=max_age_days)
        cleaned = 0

        for webhook_id in list(self.delivery_history):
            history = self.delivery_history[webhook_id]
            kept = [d for d in history if d.timestamp > cutoff]
            cleaned += len(history) - len(kept)
            if kept:
                self.delivery_history[webhook_id] = kept
            else:
                del self.delivery_history[webhook_id]

        log.debug("Delivery history cleanup completed: %s removed (max age %s days)", cleaned, max_age_days)
        return cleaned

    def stats(self) -> Dict[str, int]:
        return {
            "total_webhooks": len(self.webhooks),
            "active_webhooks": sum(1 for w in self.webhooks.values() if w.active),
            "total_deliveries": sum(len(h) for h in self.delivery_history.values()),
        }
