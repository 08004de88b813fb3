from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.deps import request_ip, require_capability
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus
from app.models.user import User
from app.routers.patients import get_clinic_patient
from app.schemas.invoice import (
    InvoiceCreate,
    InvoiceIssue,
    InvoiceLineCreate,
    InvoiceLineOut,
    InvoiceLineUpdate,
    InvoiceOut,
    InvoiceSummaryOut,
    InvoiceUpdate,
    PaymentCreate,
    PaymentOut,
)
from app.services import billing
from app.services.audit import log_event, snapshot_model
from app.services.collections import refresh_account

router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_clinic_invoice(db: Session, clinic_id: int, invoice_id: int) -> Invoice:
    invoice = db.scalar(
        select(Invoice).where(Invoice.id == invoice_id, Invoice.clinic_id == clinic_id)
    )
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice


def _editable(invoice: Invoice) -> None:
    if invoice.status != InvoiceStatus.draft:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invoice is not editable")


def _line_from_payload(payload: InvoiceLineCreate) -> InvoiceLine:
    return InvoiceLine(
        description=payload.description,
        procedure_code=payload.procedure_code,
        quantity=payload.quantity,
        unit_price_pence=payload.unit_price_pence,
        discount_pence=payload.discount_pence,
        insurance_pence=payload.insurance_pence,
    )


@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(
    payload: InvoiceCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    patient = get_clinic_patient(db, user.clinic_id, payload.patient_id)
    account, created = billing.ensure_account(
        db, clinic_id=user.clinic_id, patient=patient, actor=user
    )
    if created:
        log_event(
            db,
            actor=user,
            action="account.created",
            entity_type="patient_account",
            entity_id=str(account.id),
            after_obj=account,
            request_id=request_id,
            ip_address=request_ip(request),
        )

    invoice = Invoice(
        clinic_id=user.clinic_id,
        account_id=account.id,
        patient_id=patient.id,
        invoice_number=billing.generate_number(db, Invoice.invoice_number, user.clinic_id, "INV"),
        issue_date=payload.issue_date,
        due_date=payload.due_date,
        status=InvoiceStatus.draft,
        notes=payload.notes,
        discount_pence=payload.discount_pence,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    for line_payload in payload.lines:
        invoice.lines.append(_line_from_payload(line_payload))
    billing.compute_invoice_totals(invoice)
    db.add(invoice)
    db.flush()
    log_event(
        db,
        actor=user,
        action="invoice.created",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.get("", response_model=list[InvoiceSummaryOut])
def list_invoices(
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
    patient_id: int | None = Query(default=None),
    account_id: int | None = Query(default=None),
    status: InvoiceStatus | None = Query(default=None),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    stmt = select(Invoice).where(Invoice.clinic_id == user.clinic_id)
    if patient_id is not None:
        stmt = stmt.where(Invoice.patient_id == patient_id)
    if account_id is not None:
        stmt = stmt.where(Invoice.account_id == account_id)
    if status is not None:
        stmt = stmt.where(Invoice.status == status)
    if q:
        stmt = stmt.where(Invoice.invoice_number.ilike(f"%{q.strip()}%"))
    stmt = stmt.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt).unique())


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.view")),
):
    return get_clinic_invoice(db, user.clinic_id, invoice_id)


@router.patch("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    before_data = snapshot_model(invoice)
    data = payload.model_dump(exclude_unset=True)
    if invoice.status != InvoiceStatus.draft and set(data) - {"notes"}:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only notes can be updated once an invoice is issued.",
        )
    if "issue_date" in data:
        invoice.issue_date = data["issue_date"]
    if "due_date" in data:
        invoice.due_date = data["due_date"]
    if data.get("discount_pence") is not None:
        invoice.discount_pence = data["discount_pence"]
    if "notes" in data:
        invoice.notes = data["notes"]
    if invoice.status == InvoiceStatus.draft:
        billing.compute_invoice_totals(invoice)
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.updated",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before_data,
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/lines", response_model=InvoiceLineOut, status_code=status.HTTP_201_CREATED)
def add_invoice_line(
    invoice_id: int,
    payload: InvoiceLineCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    _editable(invoice)
    line = _line_from_payload(payload)
    invoice.lines.append(line)
    billing.compute_invoice_totals(invoice)
    invoice.updated_by_user_id = user.id
    db.flush()
    log_event(
        db,
        actor=user,
        action="invoice.line_added",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(line)
    return line


@router.patch("/{invoice_id}/lines/{line_id}", response_model=InvoiceLineOut)
def update_invoice_line(
    invoice_id: int,
    line_id: int,
    payload: InvoiceLineUpdate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    _editable(invoice)
    line = next((item for item in invoice.lines if item.id == line_id), None)
    if line is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Line item not found")
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field != "procedure_code":
            continue
        setattr(line, field, value)
    billing.compute_invoice_totals(invoice)
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.line_updated",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    db.refresh(line)
    return line


@router.delete("/{invoice_id}/lines/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice_line(
    invoice_id: int,
    line_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    _editable(invoice)
    line = next((item for item in invoice.lines if item.id == line_id), None)
    if line is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Line item not found")
    invoice.lines.remove(line)
    billing.compute_invoice_totals(invoice)
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.line_removed",
        entity_type="invoice",
        entity_id=str(invoice.id),
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    db.commit()
    return None


@router.post("/{invoice_id}/issue", response_model=InvoiceOut)
def issue_invoice(
    invoice_id: int,
    request: Request,
    payload: InvoiceIssue | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    before_data = snapshot_model(invoice)
    billing.issue_invoice(
        invoice,
        issue_date=payload.issue_date if payload else None,
        due_date=payload.due_date if payload else None,
    )
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.issued",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before_data,
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    refresh_account(
        db, invoice.account, actor=user, request_id=request_id, ip_address=request_ip(request)
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/void", response_model=InvoiceOut)
def void_invoice(
    invoice_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    before_data = snapshot_model(invoice)
    billing.void_invoice(invoice)
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="invoice.voided",
        entity_type="invoice",
        entity_id=str(invoice.id),
        before_data=before_data,
        after_obj=invoice,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    refresh_account(
        db, invoice.account, actor=user, request_id=request_id, ip_address=request_ip(request)
    )
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{invoice_id}/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def add_payment(
    invoice_id: int,
    payload: PaymentCreate,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(require_capability("billing.write")),
    request_id: str | None = Header(default=None),
):
    invoice = get_clinic_invoice(db, user.clinic_id, invoice_id)
    before_status = invoice.status
    payment = billing.record_payment(
        db,
        invoice=invoice,
        amount_pence=payload.amount_pence,
        method=payload.method,
        actor=user,
        paid_at=payload.paid_at,
        reference=payload.reference,
    )
    invoice.updated_by_user_id = user.id
    log_event(
        db,
        actor=user,
        action="payment.recorded",
        entity_type="payment",
        entity_id=str(payment.id),
        after_obj=payment,
        request_id=request_id,
        ip_address=request_ip(request),
    )
    if before_status != InvoiceStatus.paid and invoice.status == InvoiceStatus.paid:
        log_event(
            db,
            actor=user,
            action="invoice.paid",
            entity_type="invoice",
            entity_id=str(invoice.id),
            after_obj=invoice,
            request_id=request_id,
            ip_address=request_ip(request),
        )
    refresh_account(
        db, invoice.account, actor=user, request_id=request_id, ip_address=request_ip(request)
    )
    db.commit()
    db.refresh(payment)
    return payment
