"""Contact models for the people notified about slot changes."""

from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class Client(BaseModel):
    """Client model."""

    id: str
    telegram_id: Optional[int] = Field(default=None, description="Telegram user ID")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class Practitioner(BaseModel):
    """Practitioner offering slots."""

    id: str
    display_name: Optional[str] = None
    telegram_id: Optional[int] = None
    email: Optional[EmailStr] = None
    is_active: bool = True
    timezone: Optional[str] = None
