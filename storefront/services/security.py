"""
Journal des événements de sécurité / d'exploitation.

Canal d'alerte des flux commande : les échecs de restauration de stock,
les ruptures au checkout, etc. y sont consignés. Les événements high /
critical partent en ERROR avec alert=True pour le monitoring.

Stockage : anneau borné en mémoire (process-local). L'instance vit dans
app.state, pas au niveau module.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from storefront.app.core.config import SECURITY_LOG_MAX_ENTRIES
from storefront.app.db.models.core_types import Severity

logger = structlog.get_logger("storefront.security")

ALERT_SEVERITIES = {Severity.high, Severity.critical}

# Headers proxy consultés dans l'ordre
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip", "x-client-ip")


@dataclass(frozen=True)
class SecurityEvent:
    event: str
    severity: Severity
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str | None = None
    ip: str | None = None
    details: dict[str, Any] | None = None


class SecurityEventLog:
    def __init__(self, max_entries: int = SECURITY_LOG_MAX_ENTRIES):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self._events: deque[SecurityEvent] = deque(maxlen=max_entries)

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        event: str,
        severity: Severity | str = Severity.low,
        *,
        user_id: str | None = None,
        ip: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityEvent:
        entry = SecurityEvent(
            event=event,
            severity=Severity(severity),
            user_id=user_id,
            ip=ip,
            details=details,
        )
        self._events.append(entry)

        log_kw = {
            "security_event": entry.event,
            "severity": entry.severity.value,
            "user_id": entry.user_id,
            "ip": entry.ip,
            "details": entry.details,
        }
        if entry.severity in ALERT_SEVERITIES:
            logger.error("security_alert", alert=True, **log_kw)
        else:
            logger.info("security_event", **log_kw)

        return entry

    def recent(self, limit: int = 100, severity: Severity | str | None = None) -> list[SecurityEvent]:
        """Derniers événements, du plus récent au plus ancien."""
        if limit <= 0:
            return []
        events = list(self._events)
        if severity is not None:
            wanted = Severity(severity)
            events = [e for e in events if e.severity == wanted]
        return list(reversed(events[-limit:]))

    def detect_suspicious_activity(
        self,
        user_id: str,
        event: str,
        *,
        window: timedelta = timedelta(hours=1),
        threshold: int = 10,
    ) -> bool:
        """Plus de `threshold` événements identiques du même user dans la fenêtre."""
        since = datetime.now(timezone.utc) - window
        count = sum(
            1
            for e in self._events
            if e.user_id == user_id and e.event == event and e.timestamp >= since
        )
        return count > threshold


def client_ip_from_headers(headers: Any, fallback: str | None = None) -> str | None:
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            # x-forwarded-for peut contenir une chaîne d'IP : la première est le client
            return value.split(",")[0].strip()
    return fallback
