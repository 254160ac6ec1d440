"""Pydantic schemas for user credit endpoints"""
from pydantic import BaseModel, Field


class UpdateThresholdRequest(BaseModel):
    """Low balance notification threshold"""
    threshold: int = Field(..., ge=0)
