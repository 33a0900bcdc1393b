from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase JSON from the site's tracking script as well as snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PageViewRequest(CamelModel):
    path: str = Field(max_length=2048)
    referrer: Optional[str] = Field(default=None, max_length=2048)
    session_id: Optional[str] = Field(default=None, max_length=64)
    utm_source: Optional[str] = Field(default=None, max_length=255)
    utm_medium: Optional[str] = Field(default=None, max_length=255)
    utm_campaign: Optional[str] = Field(default=None, max_length=255)
    device_info: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(CamelModel):
    event_type: str = Field(max_length=100)
    session_id: Optional[str] = Field(default=None, max_length=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrackResponse(CamelModel):
    success: bool = True
    tracked: bool
    session_id: Optional[str] = None
    visit_id: Optional[int] = None
    conversion_id: Optional[int] = None
