"""
Analytics models: page visits, engagement samples, conversions, attribution
records and generic tracked events.

All timestamps are naive UTC and assigned by the server at write time.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PageVisit(SQLModel, table=True):
    """One page view. Immutable once written."""

    __tablename__ = "page_visit"

    id: Optional[int] = Field(default=None, primary_key=True)
    page_url: str = Field(index=True)
    referrer: Optional[str] = Field(default=None)
    utm_source: Optional[str] = Field(default=None, index=True)
    utm_medium: Optional[str] = Field(default=None)
    utm_campaign: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    ip_hash: Optional[str] = Field(default=None)  # Hashed for privacy
    session_id: Optional[str] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    device_type: Optional[str] = Field(default=None)  # desktop, mobile, tablet, unknown
    country: Optional[str] = Field(default=None)
    is_landing_page: bool = Field(default=False, index=True)
    visit_time: datetime = Field(default_factory=utcnow, index=True)


class PageEngagement(SQLModel, table=True):
    """
    Engagement sample for a visit.

    Clients send cumulative samples, so a visit may have several rows; reports
    use the largest value per visit.
    """

    __tablename__ = "page_engagement"

    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="page_visit.id", index=True)
    time_on_page: float = Field(default=0)  # seconds
    scroll_depth: float = Field(default=0)  # percent, 0-100
    click_count: int = Field(default=0)
    form_interactions: int = Field(default=0)
    engagement_time: datetime = Field(default_factory=utcnow, index=True)


class Conversion(SQLModel, table=True):
    """A goal completion tied to the visit it happened on. Never mutated."""

    __tablename__ = "conversion"

    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="page_visit.id", index=True)
    conversion_type: str = Field(index=True)  # e.g. "form_submission", "booking"
    conversion_value: float = Field(default=0)
    conversion_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    conversion_time: datetime = Field(default_factory=utcnow, index=True)


class AttributionEvent(SQLModel, table=True):
    """Credit assigned to one visit for one conversion under one model."""

    __tablename__ = "attribution_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    conversion_id: int = Field(foreign_key="conversion.id", index=True)
    visit_id: int = Field(foreign_key="page_visit.id", index=True)
    attribution_model: str = Field(index=True)  # first, last, linear, position
    attribution_weight: float
    created_at: datetime = Field(default_factory=utcnow)


class AnalyticsEvent(SQLModel, table=True):
    """Track custom analytics events."""

    __tablename__ = "analytics_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)  # e.g. "form_submission", "conversion", "cta_click"
    session_id: Optional[str] = Field(default=None, index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    properties: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    timestamp: datetime = Field(default_factory=utcnow, index=True)
