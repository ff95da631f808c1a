"""
Pydantic schemas for health check.
"""
from datetime import datetime
from pydantic import BaseModel


class HealthResponse(BaseModel):
    """
    Schema for health check response.
    """
    status: str
    database: str
    kms_provider: str
    timestamp: datetime
