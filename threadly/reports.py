"""Listing and user reports, reviewed by admins."""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud
from .errors import ConflictError, NotFoundError, ValidationError
from .models import OPEN_REPORT_STATUSES, Product, Report, ReportStatus, ReportType, User, UserRole, utcnow

logger = logging.getLogger(__name__)

APPROVED = "APPROVED"
DISMISSED = "DISMISSED"


def create_report(
    db: Session,
    reporter: User,
    report_type: ReportType,
    target_id: int,
    reason: str,
    description: Optional[str] = None,
) -> Report:
    """File a report; a reporter has at most one open report per target."""
    if report_type == ReportType.PRODUCT:
        product = crud.get_product_or_404(db, target_id)
        if product.seller_id == reporter.id:
            raise ValidationError("You cannot report your own listing", code="self_report")
        target_filter = Report.product_id == target_id
    else:
        if crud.get_user(db, target_id) is None:
            raise NotFoundError(f"User with id {target_id} not found", code="user_not_found")
        if target_id == reporter.id:
            raise ValidationError("You cannot report yourself", code="self_report")
        target_filter = Report.reported_user_id == target_id

    already = (
        db.query(Report.id)
        .filter(
            Report.reporter_id == reporter.id,
            Report.type == report_type,
            target_filter,
            Report.status.in_(OPEN_REPORT_STATUSES),
        )
        .first()
    )
    if already is not None:
        raise ConflictError(
            "You have already reported this item",
            code="already_reported",
            details={"report_id": already.id},
        )

    report = Report(
        reporter_id=reporter.id,
        type=report_type,
        product_id=target_id if report_type == ReportType.PRODUCT else None,
        reported_user_id=target_id if report_type == ReportType.USER else None,
        reason=reason,
        description=description,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info("Report %s filed by user %s against %s %s", report.id, reporter.id, report_type.value, target_id)
    return report


def list_reports(
    db: Session,
    status: Optional[ReportStatus] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[Report], int]:
    query = db.query(Report)
    if status is not None:
        query = query.filter(Report.status == status)
    total = query.count()
    items = query.order_by(Report.created_at.desc(), Report.id.desc()).offset(skip).limit(limit).all()
    return items, total


def admin_ids(db: Session) -> List[int]:
    return [row.id for row in db.query(User.id).filter(User.role == UserRole.ADMIN).all()]


def resolve_report(db: Session, report_id: int, moderator: User, resolution: str) -> Tuple[Report, Optional[Product]]:
    """Close an open report.

    APPROVED on a product report soft-removes the listing, which only succeeds
    while it is AVAILABLE. Returns the report and the removed product, if any.
    """
    report = db.query(Report).filter(Report.id == report_id).first()
    if report is None:
        raise NotFoundError(f"Report with id {report_id} not found", code="report_not_found")
    if report.status not in OPEN_REPORT_STATUSES:
        raise ConflictError(
            "Report is already closed",
            code="report_closed",
            details={"report_id": report.id, "status": report.status.value},
        )

    removed = None
    if resolution == APPROVED and report.type == ReportType.PRODUCT:
        product = crud.get_product_or_404(db, report.product_id)
        removed = crud.remove_product(db, product)

    closed = (
        db.query(Report)
        .filter(Report.id == report.id, Report.status.in_(OPEN_REPORT_STATUSES))
        .update(
            {
                Report.status: ReportStatus.RESOLVED if resolution == APPROVED else ReportStatus.DISMISSED,
                Report.resolution: resolution,
                Report.resolved_by: moderator.id,
                Report.resolved_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(report)
    if closed == 0:
        raise ConflictError(
            "Report is already closed",
            code="report_closed",
            details={"report_id": report.id, "status": report.status.value},
        )
    logger.info("Report %s %s by admin %s", report.id, resolution.lower(), moderator.id)
    return report, removed
