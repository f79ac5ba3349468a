"""Quota and usage models"""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class QuotaWindow(str, Enum):
    """Rolling time buckets tracked per principal"""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


class QuotaDimension(str, Enum):
    """What a window counts"""
    REQUESTS = "requests"
    TOKENS = "tokens"


# Fixed evaluation order for admission checks
CHECK_ORDER = [
    (QuotaWindow.MINUTE, QuotaDimension.REQUESTS),
    (QuotaWindow.MINUTE, QuotaDimension.TOKENS),
    (QuotaWindow.HOUR, QuotaDimension.REQUESTS),
    (QuotaWindow.HOUR, QuotaDimension.TOKENS),
    (QuotaWindow.DAY, QuotaDimension.REQUESTS),
    (QuotaWindow.DAY, QuotaDimension.TOKENS),
]


def counter_name(window: QuotaWindow, dimension: QuotaDimension) -> str:
    """Attribute name shared by QuotaLimits and UsageRecord, e.g. tokens_per_hour"""
    return f"{dimension.value}_per_{window.value}"


class QuotaLimits(BaseModel):
    """Static budget for one principal"""
    principal_id: str
    requests_per_minute: int = Field(60, gt=0)
    requests_per_hour: int = Field(1000, gt=0)
    requests_per_day: int = Field(10000, gt=0)
    tokens_per_minute: int = Field(10000, gt=0)
    tokens_per_hour: int = Field(100000, gt=0)
    tokens_per_day: int = Field(1000000, gt=0)
    max_concurrent_requests: int = Field(5, gt=0)
    created_at: int = 0
    updated_at: int = 0


class UsageEvent(BaseModel):
    """One completed unit of work, kept for reporting only"""
    timestamp: int
    tokens: int = 0
    cost: float = 0.0
    request_type: str = "default"
    success: bool = True


class UsageRecord(BaseModel):
    """Rolling counters and lifetime totals for one principal"""
    principal_id: str

    requests_per_minute: int = 0
    requests_per_hour: int = 0
    requests_per_day: int = 0
    tokens_per_minute: int = 0
    tokens_per_hour: int = 0
    tokens_per_day: int = 0

    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    concurrent_requests: int = 0
    last_used: int = 0
    created_at: int = 0

    last_reset_minute: int = 0
    last_reset_hour: int = 0
    last_reset_day: int = 0

    history: List[UsageEvent] = Field(default_factory=list)


class SoftLimit(BaseModel):
    """A dimension at or above the soft-limit threshold"""
    limit: str
    ratio: int
    threshold: int


class SoftLimitInfo(BaseModel):
    approaching_limit: bool = False
    limits: List[SoftLimit] = Field(default_factory=list)
    current_usage: Dict[str, float] = Field(default_factory=dict)


class WindowRemaining(BaseModel):
    per_minute: int
    per_hour: int
    per_day: int


class QuotaRemaining(BaseModel):
    requests: WindowRemaining
    tokens: WindowRemaining
    concurrent_requests: int


class AdmissionResult(BaseModel):
    """Outcome of a successful admission check"""
    allowed: bool = True
    remaining: QuotaRemaining
    soft_limit_info: SoftLimitInfo


class UsageStats(BaseModel):
    """Aggregates computed from a principal's usage history"""
    principal_id: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_tokens_per_request: float = 0.0
    average_cost_per_request: float = 0.0
    request_types: Dict[str, int] = Field(default_factory=dict)
    hourly_distribution: Dict[int, int] = Field(default_factory=dict)
    daily_distribution: Dict[str, int] = Field(default_factory=dict)
