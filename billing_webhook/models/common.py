"""
Common Pydantic models for the billing webhook API
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """
    Health check response model
    """
    status: str
    service: str
    version: str
    environment: str
    database: str
    stripe: str
    timestamp: datetime
    uptime: float
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """
    Acknowledgement returned to Stripe once an event is handled (or ignored)
    """
    received: bool = True
    event: str
    id: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """
    Error response model
    """
    error: str
    message: str
    event: Optional[str] = None
    id: Optional[str] = None


class DevEndpointResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
