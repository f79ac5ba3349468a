"""Webhook models"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class WebhookEventType(str, Enum):
    """Recognised webhook events"""
    AI_GENERATION_COMPLETED = "ai.generation.completed"
    AI_GENERATION_FAILED = "ai.generation.failed"
    JOB_STARTED = "job.started"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    VIDEO_GENERATION_STARTED = "video.generation.started"
    VIDEO_GENERATION_COMPLETED = "video.generation.completed"
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    QUOTA_EXCEEDED = "quota.exceeded"
    WEBHOOK_TEST = "webhook.test"


WILDCARD_EVENT = "*"
EVENT_VOCABULARY_VERSION = "1.0"

EVENT_CATALOG: Dict[WebhookEventType, Dict[str, Any]] = {
    WebhookEventType.AI_GENERATION_COMPLETED: {
        "description": "AI content generation completed",
        "payload": {"principalId": "string", "taskId": "string", "model": "string", "tokensUsed": "number", "cost": "number"},
    },
    WebhookEventType.AI_GENERATION_FAILED: {
        "description": "AI content generation failed",
        "payload": {"principalId": "string", "taskId": "string", "error": "string"},
    },
    WebhookEventType.JOB_STARTED: {
        "description": "An asynchronous job was accepted",
        "payload": {"jobId": "string", "requestType": "string"},
    },
    WebhookEventType.JOB_COMPLETED: {
        "description": "An asynchronous job finished successfully",
        "payload": {"jobId": "string", "tokensUsed": "number", "cost": "number"},
    },
    WebhookEventType.JOB_FAILED: {
        "description": "An asynchronous job failed",
        "payload": {"jobId": "string", "error": "string"},
    },
    WebhookEventType.VIDEO_GENERATION_STARTED: {
        "description": "Video generation task submitted to the provider",
        "payload": {"taskId": "string", "model": "string"},
    },
    WebhookEventType.VIDEO_GENERATION_COMPLETED: {
        "description": "Video generation task finished",
        "payload": {"taskId": "string", "status": "string", "fileId": "string"},
    },
    WebhookEventType.USER_CREATED: {
        "description": "A new user was created",
        "payload": {"principalId": "string", "email": "string", "role": "string"},
    },
    WebhookEventType.USER_UPDATED: {
        "description": "A user profile was updated",
        "payload": {"principalId": "string", "changes": "object"},
    },
    WebhookEventType.QUOTA_EXCEEDED: {
        "description": "A principal hit a quota ceiling",
        "payload": {"principalId": "string", "reason": "string", "window": "string", "dimension": "string"},
    },
    WebhookEventType.WEBHOOK_TEST: {
        "description": "Test delivery sent on demand",
        "payload": {"test": "boolean", "message": "string"},
    },
}


def is_known_event(name: str) -> bool:
    return name in {e.value for e in WebhookEventType}


class DeliveryState(str, Enum):
    """States of a single delivery's retry chain"""
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    EXHAUSTED = "exhausted"


class WebhookMetadata(BaseModel):
    """Per-target delivery overrides"""
    description: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = 10000
    max_retries: int = 3
    retry_delay: int = 5000


class WebhookRegistration(BaseModel):
    """A delivery target owned by one principal"""
    id: str
    principal_id: str
    url: str
    events: List[str] = Field(default_factory=lambda: [WILDCARD_EVENT])
    secret: Optional[str] = None
    active: bool = True
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)
    created_at: datetime
    updated_at: datetime

    def matches(self, event: str) -> bool:
        return event in self.events or WILDCARD_EVENT in self.events

    def public_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if not include_secret:
            data.pop("secret", None)
        return data


class EnvelopeMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhook_id: str = Field(alias="webhookId")
    principal_id: str = Field(alias="principalId")


class WebhookEnvelope(BaseModel):
    """Body POSTed to a webhook target"""
    model_config = ConfigDict(populate_by_name=True)

    event: str
    timestamp: str
    delivery_id: str = Field(alias="deliveryId")
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: EnvelopeMetadata

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DeliveryAttempt(BaseModel):
    """One HTTP attempt, as kept in a webhook's delivery history"""
    delivery_id: str
    webhook_id: str
    event: str
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime
    retry_count: int = 0


class DeliveryResult(BaseModel):
    """Terminal result of a delivery's retry chain"""
    delivery_id: str
    webhook_id: str
    event: str
    state: DeliveryState
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0
    attempts: int = 1
    timestamp: datetime


class DeliveryOutcome(BaseModel):
    """Per-webhook summary returned by trigger_event"""
    webhook_id: str
    success: bool
    state: DeliveryState
    delivery_id: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0
    timestamp: datetime
