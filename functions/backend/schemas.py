"""
Pydantic schemas for the billing API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class CreateBillingRequest(BaseModel):
    design_id: str = Field(..., max_length=64)
    total_shirts: int = Field(..., ge=0)
    printing_fee: float = Field(..., ge=0)
    revision_fee: float = Field(0.0, ge=0)
    designer_fee: float = Field(0.0, ge=0)
    client_id: Optional[str] = None
    designer_id: Optional[str] = None


class NegotiationEntryResponse(BaseModel):
    amount: float
    date: float
    added_by: Optional[str] = None


class BillingResponse(BaseModel):
    billing_id: str
    design_id: str
    client_id: Optional[str] = None
    designer_id: Optional[str] = None
    total_shirts: int
    printing_fee: float
    revision_fee: float
    designer_fee: float
    starting_amount: float
    addons_shirt_price: float = 0.0
    addons_fee: float = 0.0
    final_amount: float = 0.0
    status: Literal["pending", "approved", "billed"]
    negotiation_rounds: int
    negotiation_history: list[NegotiationEntryResponse]
    invoice_no: Optional[int] = None
    created_at: float
    updated_at: float


class ListBillingsResponse(BaseModel):
    billings: list[BillingResponse]


class BreakdownResponse(BaseModel):
    shirt_count: int
    print_fee: float
    revision_fee: float
    designer_fee: float
    total: float


class BillingDetailResponse(BaseModel):
    billing: BillingResponse
    invoice_no: int
    created_at: str
    request_title: str
    request_description: str
    breakdown: BreakdownResponse


class ClientInfoResponse(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None


class NegotiationRequest(BaseModel):
    new_amount: float = Field(..., ge=0)


class NegotiationResponse(BaseModel):
    success: Literal[True] = True
    negotiation: NegotiationEntryResponse


class ApprovalResponse(BaseModel):
    success: Literal[True] = True
    billing_id: str
    final_amount: float


class AddonsRequest(BaseModel):
    quantity_price: float = Field(0.0, ge=0)
    fee: float = Field(0.0, ge=0)


class FinalAmountRequest(BaseModel):
    final_amount: float = Field(..., ge=0)


class SuccessResponse(BaseModel):
    success: Literal[True] = True


class PublishInvoiceResponse(BaseModel):
    invoice_no: int
    path: str
    url: str
