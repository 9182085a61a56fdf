from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from storefront.app.db.models.core_types import Severity


class SecurityEventRead(BaseModel):
    timestamp: datetime
    event: str
    severity: Severity
    user_id: str | None = None
    ip: str | None = None
    details: dict[str, Any] | None = None

    class Config:
        from_attributes = True
