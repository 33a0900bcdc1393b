"""
Persisted rollups of analytics counters.

``MetricsSnapshot`` rows are written by the real-time aggregator on every
successful persist tick (``report_type="realtime"``) and by the scheduled
daily/weekly/monthly rollups. The table is append-only; the dashboard reads
it for historical charts.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON

from app.models.analytics import utcnow

__all__ = [
    "MetricsSnapshot",
    "REPORT_TYPES",
]

REPORT_TYPES = ("realtime", "daily", "weekly", "monthly")


class MetricsSnapshot(SQLModel, table=True):
    """
    Time-bounded rollup of analytics counters.

    Example:
        snapshot = MetricsSnapshot(
            report_type="realtime",
            landing_page_visits=120,
            conversions=6,
            referral_counts={"google": 80, "Direct": 40},
        )
    """

    __tablename__ = "analytics_snapshot"

    id: Optional[int] = Field(default=None, primary_key=True)
    report_type: str = Field(max_length=20, index=True)
    window_start: Optional[datetime] = Field(default=None)
    snapshot_time: datetime = Field(default_factory=utcnow, index=True)

    landing_page_visits: int = Field(default=0)
    page_views: int = Field(default=0)
    conversions: int = Field(default=0)
    form_submissions: int = Field(default=0)
    form_errors: int = Field(default=0)
    average_time_per_user: float = Field(default=0)
    conversion_rate: float = Field(default=0)

    referral_counts: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    devices: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    geography: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    form_types: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "report_type": self.report_type,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "snapshot_time": self.snapshot_time.isoformat(),
            "landing_page_visits": self.landing_page_visits,
            "page_views": self.page_views,
            "conversions": self.conversions,
            "form_submissions": self.form_submissions,
            "form_errors": self.form_errors,
            "average_time_per_user": round(self.average_time_per_user, 2),
            "conversion_rate": round(self.conversion_rate, 4),
            "referral_counts": self.referral_counts or {},
            "devices": self.devices or {},
            "geography": self.geography or {},
            "form_types": self.form_types or {},
        }
