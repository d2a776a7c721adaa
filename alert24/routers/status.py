"""Status page API - current service statuses and recent updates."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import Service, ServiceStatusHistory, StatusPage, StatusUpdate
from ..schemas.status import ServiceStatus, StatusPageOverview, StatusUpdateResponse

router = APIRouter(prefix="/api/status-pages", tags=["status"])


@router.get("/{status_page_id}", response_model=StatusPageOverview)
async def get_status_page(
    status_page_id: int,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Get a status page's services and its most recent status updates."""
    page = await db.get(StatusPage, status_page_id)
    if not page:
        raise HTTPException(status_code=404, detail="Status page not found")

    # Services with the start of their open history interval, if any
    result = await db.execute(
        select(Service, ServiceStatusHistory.started_at)
        .outerjoin(
            ServiceStatusHistory,
            (ServiceStatusHistory.service_id == Service.id) & ServiceStatusHistory.ended_at.is_(None),
        )
        .where(Service.status_page_id == status_page_id)
        .order_by(Service.id)
    )
    services = [
        ServiceStatus(
            id=service.id,
            name=service.name,
            status=service.status,
            status_locked=bool(service.status_locked),
            status_since=since,
            updated_at=service.updated_at,
        )
        for service, since in result.all()
    ]

    updates = await db.execute(
        select(StatusUpdate)
        .where(StatusUpdate.status_page_id == status_page_id)
        .order_by(StatusUpdate.created_at.desc(), StatusUpdate.id.desc())
        .limit(limit)
    )
    return StatusPageOverview(
        status_page_id=page.id,
        name=page.name,
        services=services,
        updates=[StatusUpdateResponse.model_validate(u) for u in updates.scalars().all()],
    )
