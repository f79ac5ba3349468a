"""Admission rejections raised by the quota ledger"""

from typing import Optional

from src.models.quota import QuotaDimension, QuotaWindow


class QuotaExceeded(Exception):
    """Base class for every admission rejection"""

    def __init__(
        self,
        message: str,
        principal_id: str,
        window: Optional[QuotaWindow] = None,
        dimension: Optional[QuotaDimension] = None,
    ):
        super().__init__(message)
        self.principal_id = principal_id
        self.window = window
        self.dimension = dimension

    @property
    def reason(self) -> str:
        if self.window and self.dimension:
            return f"{self.dimension.value}_per_{self.window.value}"
        return "concurrency"

    def to_dict(self):
        return {
            "error": type(self).__name__,
            "message": str(self),
            "reason": self.reason,
            "window": self.window.value if self.window else None,
            "dimension": self.dimension.value if self.dimension else None,
        }


class ConcurrencyExceeded(QuotaExceeded):
    """Too many admitted units of work without a recorded completion"""

    def __init__(self, principal_id: str, limit: int):
        super().__init__(
            f"Too many concurrent requests (limit {limit})",
            principal_id,
        )
        self.limit = limit


class RateLimitExceeded(QuotaExceeded):
    """A rolling window budget would be exceeded"""

    def __init__(
        self,
        principal_id: str,
        window: QuotaWindow,
        dimension: QuotaDimension,
        limit: int,
    ):
        super().__init__(
            f"Rate limit exceeded: {dimension.value} per {window.value}",
            principal_id,
            window=window,
            dimension=dimension,
        )
        self.limit = limit
