"""
HTTP routes for the billing API.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response

from backend import billing
from backend.billing import (
    BillingConflictError,
    BillingError,
    EnrichedBilling,
    NegotiationLimitError,
    NotFoundError,
)
from backend.config import Settings, get_settings
from backend.db import BillingRecord, DbClient, UserRecord
from backend.dependencies import get_current_user, get_db_client, get_storage_client
from backend.invoice import invoice_filename, render_invoice
from backend.schemas import (
    AddonsRequest,
    ApprovalResponse,
    BillingDetailResponse,
    BillingResponse,
    BreakdownResponse,
    ClientInfoResponse,
    CreateBillingRequest,
    FinalAmountRequest,
    ListBillingsResponse,
    NegotiationEntryResponse,
    NegotiationRequest,
    NegotiationResponse,
    PublishInvoiceResponse,
    SuccessResponse,
)
from backend.storage import StorageClient, invoice_storage_path

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_http(exc: BillingError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NegotiationLimitError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, BillingConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _billing_response(record: BillingRecord) -> BillingResponse:
    return BillingResponse(**record.as_dict())


def _load_detail(db: DbClient, design_id: str) -> EnrichedBilling:
    try:
        return billing.get_billing_by_design(db, design_id)
    except BillingError as exc:
        raise _to_http(exc) from exc


def _render_detail(detail: EnrichedBilling, settings: Settings) -> bytes:
    return render_invoice(
        detail.request_title,
        detail.request_description,
        detail.invoice_no,
        detail.created_at,
        detail.breakdown,
        detail.record.resolved_final_amount,
        settings=settings,
    )


@router.post("/billing", response_model=BillingResponse, status_code=201)
def create_billing(
    payload: CreateBillingRequest, db: DbClient = Depends(get_db_client)
):
    record = billing.create_billing(
        db,
        payload.design_id,
        total_shirts=payload.total_shirts,
        printing_fee=payload.printing_fee,
        revision_fee=payload.revision_fee,
        designer_fee=payload.designer_fee,
        client_id=payload.client_id,
        designer_id=payload.designer_id,
    )
    return _billing_response(record)


@router.get("/billing", response_model=ListBillingsResponse)
def list_billings(db: DbClient = Depends(get_db_client)):
    return ListBillingsResponse(
        billings=[_billing_response(r) for r in billing.list_billings(db)]
    )


@router.get("/billing/design/{design_id}", response_model=BillingDetailResponse)
def get_billing_by_design(design_id: str, db: DbClient = Depends(get_db_client)):
    detail = _load_detail(db, design_id)
    return BillingDetailResponse(
        billing=_billing_response(detail.record),
        invoice_no=detail.invoice_no,
        created_at=detail.created_at,
        request_title=detail.request_title,
        request_description=detail.request_description,
        breakdown=BreakdownResponse(**asdict(detail.breakdown)),
    )


@router.get(
    "/billing/design/{design_id}/breakdown", response_model=BreakdownResponse
)
def get_billing_breakdown(design_id: str, db: DbClient = Depends(get_db_client)):
    breakdown = billing.get_billing_breakdown(db, design_id)
    return BreakdownResponse(**asdict(breakdown))


@router.get(
    "/billing/design/{design_id}/client",
    response_model=Optional[ClientInfoResponse],
)
def get_client_info(design_id: str, db: DbClient = Depends(get_db_client)):
    info = billing.get_client_info_by_design(db, design_id)
    if info is None:
        return None
    return ClientInfoResponse(**asdict(info))


@router.post(
    "/billing/design/{design_id}/negotiate", response_model=NegotiationResponse
)
def submit_negotiation(
    design_id: str,
    payload: NegotiationRequest,
    db: DbClient = Depends(get_db_client),
    user: Optional[UserRecord] = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    try:
        entry = billing.submit_negotiation(
            db,
            design_id,
            payload.new_amount,
            user.user_id if user else None,
            settings=settings,
        )
    except BillingError as exc:
        raise _to_http(exc) from exc
    return NegotiationResponse(negotiation=NegotiationEntryResponse(**entry.as_dict()))


@router.post("/billing/design/{design_id}/approve", response_model=ApprovalResponse)
def approve_bill(
    design_id: str,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    try:
        result = billing.approve_bill(db, design_id, settings=settings)
    except BillingError as exc:
        raise _to_http(exc) from exc
    return ApprovalResponse(
        billing_id=result.billing_id, final_amount=result.final_amount
    )


@router.post("/billing/design/{design_id}/addons", response_model=BillingResponse)
def apply_addons(
    design_id: str,
    payload: AddonsRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    try:
        record = billing.apply_addons(
            db, design_id, payload.quantity_price, payload.fee, settings=settings
        )
    except BillingError as exc:
        raise _to_http(exc) from exc
    return _billing_response(record)


@router.put("/billing/{billing_id}/final-amount", response_model=SuccessResponse)
def update_final_amount(
    billing_id: str,
    payload: FinalAmountRequest,
    db: DbClient = Depends(get_db_client),
):
    try:
        billing.update_final_amount(db, billing_id, payload.final_amount)
    except BillingError as exc:
        raise _to_http(exc) from exc
    return SuccessResponse()


@router.get("/billing/design/{design_id}/invoice.pdf")
def download_invoice(
    design_id: str,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    detail = _load_detail(db, design_id)
    filename = invoice_filename(detail.invoice_no)
    return Response(
        content=_render_detail(detail, settings),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/billing/design/{design_id}/invoice/publish",
    response_model=PublishInvoiceResponse,
)
def publish_invoice(
    design_id: str,
    db: DbClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
):
    """
    Render the invoice, store it and hand back a signed download URL.
    """
    detail = _load_detail(db, design_id)
    path = invoice_storage_path(invoice_filename(detail.invoice_no))
    storage.upload_bytes(path, _render_detail(detail, settings))
    logger.info("Published invoice #%s to %s", detail.invoice_no, path)
    return PublishInvoiceResponse(
        invoice_no=detail.invoice_no,
        path=path,
        url=storage.presign_get(path, expires_in=settings.invoice_url_expires_in),
    )
