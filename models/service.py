"""Service catalog models."""

from typing import Optional

from pydantic import BaseModel, Field

from utils.constants import MAX_SERVICE_DURATION_MINUTES, MIN_SERVICE_DURATION_MINUTES


class Service(BaseModel):
    """A bookable service with a fixed session length."""

    id: str
    name: str
    code: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0, description="Catalog price")
    duration_minutes: int = Field(
        ...,
        ge=MIN_SERVICE_DURATION_MINUTES,
        le=MAX_SERVICE_DURATION_MINUTES,
        description="Duration in minutes",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "uuid-here",
                "name": "Consultation",
                "code": "PACO",
                "price": 60.0,
                "duration_minutes": 60,
            }
        }
