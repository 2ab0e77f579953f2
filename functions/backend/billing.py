"""
Billing and negotiation workflow.

A design gets exactly one billing record once it is approved for
production. Clients may counter-offer up to `negotiation_max_rounds` times;
each offer is stored as a discount delta against the original asking total
and re-opens the bill. Admins/designers then approve the bill (folding in
approved add-ons) or override the final amount outright.

Writes are compare-and-swap on the record version, re-read and retried a
bounded number of times, so the round cap holds under concurrent requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from backend.config import Settings, get_settings
from backend.db import (
    BillingRecord,
    DbClient,
    NegotiationEntry,
    StaleRecordError,
)
from shared.types import BillingStatus, ProfileRole

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing workflow failures."""


class NotFoundError(BillingError):
    pass


class BillingNotFoundError(NotFoundError):
    pass


class DesignNotFoundError(NotFoundError):
    pass


class RequestNotFoundError(NotFoundError):
    pass


class ProfileNotFoundError(NotFoundError):
    pass


class NegotiationLimitError(BillingError):
    def __init__(self, max_rounds: int):
        super().__init__(f"Maximum negotiation rounds reached ({max_rounds}).")
        self.max_rounds = max_rounds


class BillingConflictError(BillingError):
    pass


@dataclass(frozen=True)
class Breakdown:
    shirt_count: int = 0
    print_fee: float = 0.0
    revision_fee: float = 0.0
    designer_fee: float = 0.0
    total: float = 0.0

    @classmethod
    def from_record(cls, record: BillingRecord) -> "Breakdown":
        return cls(
            shirt_count=record.total_shirts,
            print_fee=record.printing_fee,
            revision_fee=record.revision_fee,
            designer_fee=record.designer_fee,
            total=record.starting_amount,
        )


@dataclass(frozen=True)
class ApprovalResult:
    billing_id: str
    final_amount: float


@dataclass
class EnrichedBilling:
    record: BillingRecord
    invoice_no: int
    created_at: str
    request_title: str
    request_description: str
    breakdown: Breakdown = field(default_factory=Breakdown)


@dataclass(frozen=True)
class ClientInfo:
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    address: Optional[str] = None


def original_total(record: BillingRecord) -> float:
    """Asking price plus any approved add-ons."""
    return (
        (record.starting_amount or 0)
        + (record.addons_shirt_price or 0)
        + (record.addons_fee or 0)
    )


def _require_billing_for_design(db: DbClient, design_id: str) -> BillingRecord:
    record = db.find_billing_by_design(design_id)
    if record is None:
        raise BillingNotFoundError("Billing not found")
    return record


def _compare_and_swap(
    db: DbClient,
    design_id: str,
    mutate: Callable[[BillingRecord], dict],
    *,
    retries: int,
) -> BillingRecord:
    """Read the record, compute changes, and write them if nobody raced us.

    `mutate` may raise to abort; it is re-run against fresh state on every
    attempt so its preconditions are always checked against the latest record.
    """
    for attempt in range(1, retries + 1):
        record = _require_billing_for_design(db, design_id)
        changes = mutate(record)
        try:
            updated = db.update_billing(
                record.billing_id, changes, expected_version=record.version
            )
        except StaleRecordError:
            logger.warning(
                "Concurrent update on billing %s (attempt %d/%d)",
                record.billing_id,
                attempt,
                retries,
            )
            continue
        if updated is None:
            raise BillingNotFoundError("Billing not found")
        return updated
    raise BillingConflictError(
        "Billing was modified concurrently, please retry"
    )


def create_billing(
    db: DbClient,
    design_id: str,
    *,
    total_shirts: int,
    printing_fee: float,
    revision_fee: float = 0.0,
    designer_fee: float = 0.0,
    client_id: Optional[str] = None,
    designer_id: Optional[str] = None,
) -> BillingRecord:
    """Open the billing record for a design, or return the existing one."""
    starting_amount = printing_fee * total_shirts + revision_fee + designer_fee
    record = db.create_billing(
        BillingRecord(
            design_id=design_id,
            client_id=client_id,
            designer_id=designer_id,
            total_shirts=total_shirts,
            printing_fee=printing_fee,
            revision_fee=revision_fee,
            designer_fee=designer_fee,
            starting_amount=starting_amount,
        )
    )
    logger.info(
        "Billing %s ready for design %s (invoice #%s, starting amount %s)",
        record.billing_id,
        design_id,
        record.invoice_no,
        record.starting_amount,
    )
    return record


def list_billings(db: DbClient) -> list[BillingRecord]:
    return db.list_billings()


def submit_negotiation(
    db: DbClient,
    design_id: str,
    new_amount: float,
    acting_user_id: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
) -> NegotiationEntry:
    """Record a client counter-offer as a discount delta and re-open the bill."""
    settings = settings or get_settings()
    max_rounds = settings.negotiation_max_rounds
    if acting_user_id is None:
        logger.warning(
            "Negotiation on design %s has no resolvable user; storing unattributed",
            design_id,
        )

    def mutate(record: BillingRecord) -> dict:
        rounds = record.negotiation_rounds or 0
        if rounds >= max_rounds:
            raise NegotiationLimitError(max_rounds)
        entry = NegotiationEntry(
            amount=original_total(record) - new_amount,
            added_by=acting_user_id,
        )
        return {
            "negotiation_history": [*record.negotiation_history, entry],
            "final_amount": 0.0,
            "negotiation_rounds": rounds + 1,
            "status": BillingStatus.PENDING,
        }

    updated = _compare_and_swap(
        db, design_id, mutate, retries=settings.billing_write_retries
    )
    entry = updated.negotiation_history[-1]
    logger.info(
        "Negotiation round %d on billing %s: proposed %s, discount %s",
        updated.negotiation_rounds,
        updated.billing_id,
        new_amount,
        entry.amount,
    )
    return entry


def approve_bill(
    db: DbClient, design_id: str, *, settings: Optional[Settings] = None
) -> ApprovalResult:
    """Freeze the final amount (negotiated or asking price) plus add-ons."""
    settings = settings or get_settings()

    def mutate(record: BillingRecord) -> dict:
        if record.final_amount and record.final_amount > 0:
            base = record.final_amount
        else:
            base = record.starting_amount or 0
        total = base + (record.addons_shirt_price or 0) + (record.addons_fee or 0)
        return {"status": BillingStatus.APPROVED, "final_amount": total}

    updated = _compare_and_swap(
        db, design_id, mutate, retries=settings.billing_write_retries
    )
    logger.info(
        "Billing %s approved at %s", updated.billing_id, updated.final_amount
    )
    return ApprovalResult(
        billing_id=updated.billing_id, final_amount=updated.final_amount
    )


def update_final_amount(
    db: DbClient, billing_id: str, final_amount: float
) -> BillingRecord:
    """Administrative override: set the final amount and mark the bill billed.

    Negotiation history and round count are not consulted.
    """
    updated = db.update_billing(
        billing_id,
        {"final_amount": final_amount, "status": BillingStatus.BILLED},
    )
    if updated is None:
        raise BillingNotFoundError("Billing not found")
    logger.info(
        "Final amount on billing %s overridden to %s", billing_id, final_amount
    )
    return updated


def apply_addons(
    db: DbClient,
    design_id: str,
    quantity_price: float,
    fee: float,
    *,
    settings: Optional[Settings] = None,
) -> BillingRecord:
    """Add an approved add-ons request to the bill and send it back for approval."""
    settings = settings or get_settings()

    def mutate(record: BillingRecord) -> dict:
        return {
            "addons_shirt_price": (record.addons_shirt_price or 0) + quantity_price,
            "addons_fee": (record.addons_fee or 0) + fee,
            "status": BillingStatus.PENDING,
        }

    updated = _compare_and_swap(
        db, design_id, mutate, retries=settings.billing_write_retries
    )
    logger.info(
        "Add-ons applied to billing %s: shirts %s, fee %s",
        updated.billing_id,
        quantity_price,
        fee,
    )
    return updated


def get_billing_breakdown(db: DbClient, design_id: str) -> Breakdown:
    record = db.find_billing_by_design(design_id)
    if record is None:
        return Breakdown()
    return Breakdown.from_record(record)


def _rank_invoice_no(db: DbClient, billing_id: str) -> int:
    for index, record in enumerate(db.list_billings(), start=1):
        if record.billing_id == billing_id:
            return index
    raise BillingNotFoundError("Billing not found")


def get_billing_by_design(db: DbClient, design_id: str) -> EnrichedBilling:
    record = _require_billing_for_design(db, design_id)
    design = db.get_design(design_id)
    if design is None:
        raise DesignNotFoundError("Design not found")
    request = db.get_request(design.request_id)
    if request is None:
        raise RequestNotFoundError("Design request not found")
    if db.get_profile(design.designer_id, ProfileRole.DESIGNER) is None:
        raise ProfileNotFoundError("Designer profile not found")

    invoice_no = record.invoice_no
    if invoice_no is None:
        # Not yet backfilled; the backfill stores this same rank.
        invoice_no = _rank_invoice_no(db, record.billing_id)

    return EnrichedBilling(
        record=record,
        invoice_no=invoice_no,
        created_at=datetime.fromtimestamp(
            record.created_at, tz=timezone.utc
        ).isoformat(),
        request_title=request.request_title,
        request_description=request.description,
        breakdown=Breakdown.from_record(record),
    )


def get_client_info_by_design(db: DbClient, design_id: str) -> Optional[ClientInfo]:
    design = db.get_design(design_id)
    if design is None:
        return None
    user = db.get_user(design.client_id)
    if user is None:
        return None
    profile = db.get_profile(user.user_id, ProfileRole.CLIENT)
    return ClientInfo(
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        phone=profile.phone if profile else None,
        address=profile.address if profile else None,
    )
