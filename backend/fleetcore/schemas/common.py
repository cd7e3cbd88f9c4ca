"""
Shared Pydantic schemas.
"""

from pydantic import BaseModel, Field


class Location(BaseModel):
    """WGS84 coordinate."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RejectionResponse(BaseModel):
    """Body returned for every rejected request."""
    status: str = "rejected"
    code: str
    reason: str
