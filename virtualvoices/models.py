"""
Data models for the bot auto-reactivation service
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Union
from datetime import datetime


class ReactivationResult(BaseModel):
    """Outcome of one prospect reactivation"""
    record_id: str = Field(..., description="DynamicRecord ID")
    number: str = Field(..., description="WhatsApp number of the prospect")
    reactivated_at: datetime
    inactive_minutes: int
    success: bool
    error: Optional[str] = None


class ReactivationError(BaseModel):
    number: str  # "SYSTEM" for company-level failures
    error: str


class ReactivationStats(BaseModel):
    """Statistics of one reactivation check for a company"""
    total_checked: int = 0
    reactivated: int = 0
    failed: int = 0
    results: List[ReactivationResult] = Field(default_factory=list)
    errors: List[ReactivationError] = Field(default_factory=list)


class ReactivationStatus(BaseModel):
    """Bot state of a prospect as seen by the reactivation job"""
    bot_active: bool
    deactivated_at: Optional[datetime] = None
    last_message_date: Optional[datetime] = None
    inactive_minutes: Optional[int] = None
    threshold_minutes: Optional[Union[int, float]] = None
    minutes_until_reactivation: Optional[int] = None
    auto_reactivation_enabled: Optional[bool] = None


class OperationResult(BaseModel):
    success: bool
    message: str = ""
    error: Optional[str] = None


class SettingsUpdateResult(OperationResult):
    updated: Dict[str, Any] = Field(default_factory=dict)
