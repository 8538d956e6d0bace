from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import reports, schemas
from ..auth import get_current_admin, get_current_user
from ..database import get_db
from ..dependencies import get_publisher
from ..messaging import EventPublisher
from ..models import ReportStatus, User

router = APIRouter(
    prefix="/reports",
    tags=["Reports"]
)


@router.post("", response_model=schemas.Envelope[schemas.ReportOut], status_code=status.HTTP_201_CREATED)
def create_report(
    body: schemas.ReportCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    report = reports.create_report(db, current_user, body.type, body.target_id, body.reason, body.description)
    for admin_id in reports.admin_ids(db):
        publisher.notify_user(
            admin_id,
            "report.created",
            report_id=report.id,
            report_type=report.type.value,
            target_id=report.target_id,
            reason=report.reason,
        )
    return {"success": True, "data": report, "message": "Report submitted"}


@router.get("", response_model=schemas.Envelope[schemas.Page[schemas.ReportOut]])
def list_reports(
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    items, total = reports.list_reports(db, status=report_status, skip=skip, limit=limit)
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.post("/{report_id}/resolve", response_model=schemas.Envelope[schemas.ReportOut])
def resolve_report(
    report_id: int,
    body: schemas.ReportResolve,
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Approve or dismiss a report. Approving a listing report removes the listing."""
    report, removed = reports.resolve_report(db, report_id, current_admin, body.resolution)
    if removed is not None:
        publisher.notify_user(
            removed.seller_id,
            "product.removed",
            product_id=removed.id,
            report_id=report.id,
            reason=report.reason,
        )
    return {"success": True, "data": report, "message": f"Report {report.status.value.lower()}"}
