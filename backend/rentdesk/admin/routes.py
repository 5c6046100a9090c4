from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from rentdesk.auth.dependencies import get_current_user, require_role
from rentdesk.common.enums import Role
from rentdesk.common.utils import as_dict
from rentdesk.db.prisma_client import db, prisma_session

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/audit-logs")
async def list_audit_logs(
    userId: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user=Depends(get_current_user),
) -> Dict[str, Any]:
    require_role([Role.ADMIN.value, Role.SUPER_ADMIN.value])(user)
    where: Dict[str, Any] = {"userId": userId} if userId else {}
    async with prisma_session(db) as client:
        entries = await client.auditlog.find_many(
            where=where, order={"createdAt": "desc"}, take=limit, skip=offset
        )
        total = await client.auditlog.count(where=where)
    return {"entries": [as_dict(entry) for entry in entries], "total": total}
