from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from storefront.app.api.deps import get_security_log
from storefront.app.db.models.core_types import Severity
from storefront.app.schemas.security import SecurityEventRead
from storefront.services.security import SecurityEventLog

router = APIRouter(prefix="/admin/security-logs")


@router.get("", response_model=list[SecurityEventRead])
def list_security_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    severity: Severity | None = None,
    security_log: SecurityEventLog = Depends(get_security_log),
):
    return security_log.recent(limit=limit, severity=severity)
