from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class Alert(BaseModel):
    alert_type: str  # critical_action, mass_data_export
    severity: str = "high"
    message: str
    booking_id: Optional[str] = None
    audit_entry_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
