from typing import Literal

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from sqlalchemy.orm import Session

from app.core.clock import today
from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.clinic import Clinic
from app.models.user import User
from app.schemas.collections import (
    AgingReportOut,
    AgingSummaryOut,
    AnalyticsOut,
    CollectionSummaryOut,
    DsoOut,
    ProcessRunOut,
)
from app.services import collections_analytics as analytics
from app.services.aging_csv import aging_csv_text
from app.services.aging_report_pdf import build_aging_report_pdf
from app.services.audit import log_event
from app.services.collections_cycle import run_collections_cycle

router = APIRouter(prefix="/collections", tags=["collections"])

ArType = Literal["all", "patient", "insurance"]


@router.get("/aging/summary", response_model=AgingSummaryOut)
def get_aging_summary(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    include_zero_balance: bool = Query(default=False),
):
    return analytics.aging_summary(db, user.clinic_id, include_zero_balance=include_zero_balance)


@router.get("/aging", response_model=AgingReportOut)
def get_aging_report(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    ar_type: ArType = Query(default="all"),
    min_balance: int | None = Query(default=None, ge=0),
    include_zero_balance: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=100, ge=1, le=500),
):
    return analytics.aging_report(
        db,
        user.clinic_id,
        ar_type=ar_type,
        min_balance_pence=min_balance,
        include_zero_balance=include_zero_balance,
        page=page,
        page_size=page_size,
    )


@router.get("/aging/export")
def export_aging(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    export_format: Literal["csv", "pdf"] = Query(default="csv", alias="format"),
    ar_type: ArType = Query(default="all"),
    min_balance: int | None = Query(default=None, ge=0),
    include_zero_balance: bool = Query(default=False),
):
    report = analytics.aging_report(
        db,
        user.clinic_id,
        ar_type=ar_type,
        min_balance_pence=min_balance,
        include_zero_balance=include_zero_balance,
        page=1,
        page_size=1_000_000,
    )
    as_of = today()
    if export_format == "pdf":
        clinic = db.get(Clinic, user.clinic_id)
        pdf_bytes = build_aging_report_pdf(
            clinic_name=clinic.name if clinic else "",
            as_of=as_of,
            rows=report["items"],
            totals=report["totals"],
        )
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="aging-{as_of.isoformat()}.pdf"'},
        )
    return Response(
        content=aging_csv_text(report["items"]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="aging-{as_of.isoformat()}.csv"'},
    )


@router.get("/dso", response_model=DsoOut)
def get_dso(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    period_days: int | None = Query(default=None, ge=1, le=365),
):
    return analytics.days_sales_outstanding(
        db, user.clinic_id, today=today(), period_days=period_days
    )


@router.get("/summary", response_model=CollectionSummaryOut)
def get_collection_summary(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
):
    return analytics.collection_summary(db, user.clinic_id)


@router.get("/analytics", response_model=AnalyticsOut)
def get_analytics(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.view")),
    period_days: int = Query(default=30, ge=1, le=365),
):
    return analytics.collections_analytics(
        db, user.clinic_id, today=today(), period_days=period_days
    )


@router.post("/process", response_model=ProcessRunOut)
def process_collections(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("collections.manage")),
    request_id: str | None = Header(default=None),
):
    result = run_collections_cycle(db, clinic_id=user.clinic_id, today=today())
    log_event(
        db,
        actor=user,
        action="collections.processed",
        entity_type="clinic",
        entity_id=str(user.clinic_id),
        after_data=result,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    return result
