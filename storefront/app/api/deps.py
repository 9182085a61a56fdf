from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.app.db.session import SessionLocal
from storefront.services.security import SecurityEventLog, client_ip_from_headers


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as db:
        yield db


def get_security_log(request: Request) -> SecurityEventLog:
    return request.app.state.security_log


def get_client_ip(request: Request) -> str | None:
    peer = request.client.host if request.client else None
    return client_ip_from_headers(request.headers, fallback=peer)


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str | None:
    # Identité fournie par la couche auth en amont
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()
