# backend/rentdesk/core/audit.py

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp

from rentdesk.common.utils import extract
from rentdesk.core.security import decode_token
from rentdesk.db.prisma_client import db, prisma_session

logger = logging.getLogger(__name__)


class AuditLogMiddleware(BaseHTTPMiddleware):
    """Record authenticated requests in the audit log without affecting the response."""

    def __init__(self, app: ASGIApp, prisma_client: Any = db) -> None:
        super().__init__(app)
        self._prisma = prisma_client

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start_time) * 1000

        auth_header: Optional[str] = request.headers.get("authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return response

        try:
            payload = decode_token(auth_header[7:])
        except JWTError:
            logger.debug("Skipping audit entry for undecodable token")
            return response

        email = payload.get("sub") if isinstance(payload, dict) else None
        if not email:
            return response

        try:
            async with prisma_session(self._prisma) as prisma:
                user = await prisma.user.find_unique(where={"email": email})
                if not user:
                    return response
                await prisma.auditlog.create(
                    data={
                        "action": f"{request.method} {request.url.path}",
                        "userId": extract(user, "id"),
                        "statusCode": response.status_code,
                        "latencyMs": latency_ms,
                        "clientIp": request.client.host if request.client else None,
                        "userAgent": request.headers.get("user-agent"),
                    }
                )
        except Exception:
            logger.exception("Failed to persist audit log entry")

        return response
