"""schemas/admin.py - Pydantic models for admin config routes."""

from typing import Optional

from pydantic import BaseModel


class AdminConfigResponse(BaseModel):
    key: str
    value: Optional[str] = None
    description: Optional[str] = None


class AdminConfigUpdatePayload(BaseModel):
    value: str
    description: Optional[str] = None
