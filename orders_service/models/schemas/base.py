"""
Base schemas used across the application.
"""
from typing import Optional
from pydantic import BaseModel

class ErrorResponse(BaseModel):
    """Body returned for every 4xx/5xx produced by the API."""
    success: bool = False
    message: str
    request_id: Optional[str] = None
