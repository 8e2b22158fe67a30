"""RateLimitState model shared by every process talking to the catalog API."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from library_sync.database import Base


class RateLimitState(Base):
    """
    Persisted rate-limit record, one row per logical API key.

    ``is_rate_limited`` holds only while ``retry_after`` is in the future.
    """

    __tablename__ = "rate_limit_state"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Sliding window bookkeeping
    request_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_rate_limited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retry_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_request_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_rate_limit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<RateLimitState {self.key}: limited={self.is_rate_limited}>"
