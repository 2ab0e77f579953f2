"""
Database abstraction for Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import dataclasses
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Integer,
    String,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shared.types import BillingStatus, ProfileRole

INVOICE_SEQUENCE = "invoice_no"


class StaleRecordError(Exception):
    """A compare-and-swap update found a newer version of the record."""

    def __init__(self, billing_id: str):
        super().__init__(f"Billing {billing_id} was modified concurrently")
        self.billing_id = billing_id


class DbClient(Protocol):
    """Interface for database access."""

    def create_billing(self, record: "BillingRecord") -> "BillingRecord":
        ...

    def get_billing(self, billing_id: str) -> Optional["BillingRecord"]:
        ...

    def find_billing_by_design(self, design_id: str) -> Optional["BillingRecord"]:
        ...

    def list_billings(self) -> list["BillingRecord"]:
        ...

    def update_billing(
        self,
        billing_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional["BillingRecord"]:
        ...

    def reserve_invoice_numbers(self, upto: int) -> int:
        ...

    def save_user(self, user: "UserRecord") -> None:
        ...

    def get_user(self, user_id: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_subject(self, subject: str) -> Optional["UserRecord"]:
        ...

    def save_design(self, design: "DesignRecord") -> None:
        ...

    def get_design(self, design_id: str) -> Optional["DesignRecord"]:
        ...

    def save_request(self, request: "RequestRecord") -> None:
        ...

    def get_request(self, request_id: str) -> Optional["RequestRecord"]:
        ...

    def save_profile(self, profile: "ProfileRecord") -> None:
        ...

    def get_profile(
        self, user_id: str, role: ProfileRole
    ) -> Optional["ProfileRecord"]:
        ...


@dataclass
class NegotiationEntry:
    """One client counter-offer; `amount` is the discount delta."""

    amount: float
    date: float = field(default_factory=lambda: time.time())
    added_by: Optional[str] = None

    def as_dict(self) -> dict:
        return {"amount": self.amount, "date": self.date, "added_by": self.added_by}

    @classmethod
    def from_dict(cls, data: dict) -> "NegotiationEntry":
        return cls(
            amount=data["amount"],
            date=data["date"],
            added_by=data.get("added_by"),
        )


@dataclass
class BillingRecord:
    design_id: str
    total_shirts: int
    printing_fee: float
    revision_fee: float
    designer_fee: float
    starting_amount: float
    billing_id: str = ""
    client_id: Optional[str] = None
    designer_id: Optional[str] = None
    addons_shirt_price: float = 0.0
    addons_fee: float = 0.0
    # 0 means "not finalized yet".
    final_amount: float = 0.0
    status: BillingStatus = BillingStatus.PENDING
    negotiation_rounds: int = 0
    negotiation_history: List[NegotiationEntry] = field(default_factory=list)
    invoice_no: Optional[int] = None
    version: int = 0
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def is_finalized(self) -> bool:
        return self.status in (BillingStatus.APPROVED, BillingStatus.BILLED)

    @property
    def resolved_final_amount(self) -> Optional[float]:
        """The frozen total, or None while the bill is still negotiable."""
        return self.final_amount if self.is_finalized else None

    def as_dict(self) -> dict:
        return {
            "billing_id": self.billing_id,
            "design_id": self.design_id,
            "client_id": self.client_id,
            "designer_id": self.designer_id,
            "total_shirts": self.total_shirts,
            "printing_fee": self.printing_fee,
            "revision_fee": self.revision_fee,
            "designer_fee": self.designer_fee,
            "starting_amount": self.starting_amount,
            "addons_shirt_price": self.addons_shirt_price,
            "addons_fee": self.addons_fee,
            "final_amount": self.final_amount,
            "status": self.status.value,
            "negotiation_rounds": self.negotiation_rounds,
            "negotiation_history": [
                entry.as_dict() for entry in self.negotiation_history
            ],
            "invoice_no": self.invoice_no,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class UserRecord:
    user_id: str
    subject: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""


@dataclass
class DesignRecord:
    design_id: str
    request_id: str
    client_id: str
    designer_id: str
    status: str = "approved"


@dataclass
class RequestRecord:
    request_id: str
    client_id: str
    request_title: str
    description: str = ""


@dataclass
class ProfileRecord:
    user_id: str
    role: ProfileRole
    phone: Optional[str] = None
    address: Optional[str] = None


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.billings: Dict[str, BillingRecord] = {}
        self.users: Dict[str, UserRecord] = {}
        self.designs: Dict[str, DesignRecord] = {}
        self.requests: Dict[str, RequestRecord] = {}
        self.profiles: Dict[tuple[str, str], ProfileRecord] = {}
        self.invoice_counter = 0
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.billings.clear()
            self.users.clear()
            self.designs.clear()
            self.requests.clear()
            self.profiles.clear()
            self.invoice_counter = 0

    def create_billing(self, record: BillingRecord) -> BillingRecord:
        with self._lock:
            for existing in self.billings.values():
                if existing.design_id == record.design_id:
                    return copy.deepcopy(existing)
            now = time.time()
            self.invoice_counter += 1
            stored = dataclasses.replace(
                copy.deepcopy(record),
                billing_id=record.billing_id or uuid.uuid4().hex,
                invoice_no=self.invoice_counter,
                version=0,
                created_at=now,
                updated_at=now,
            )
            self.billings[stored.billing_id] = stored
            return copy.deepcopy(stored)

    def get_billing(self, billing_id: str) -> Optional[BillingRecord]:
        with self._lock:
            record = self.billings.get(billing_id)
            return copy.deepcopy(record) if record else None

    def find_billing_by_design(self, design_id: str) -> Optional[BillingRecord]:
        with self._lock:
            for record in self.billings.values():
                if record.design_id == design_id:
                    return copy.deepcopy(record)
        return None

    def list_billings(self) -> list[BillingRecord]:
        with self._lock:
            # sorted() is stable, so equal timestamps keep insertion order.
            return [
                copy.deepcopy(record)
                for record in sorted(self.billings.values(), key=lambda r: r.created_at)
            ]

    def update_billing(
        self,
        billing_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[BillingRecord]:
        with self._lock:
            record = self.billings.get(billing_id)
            if record is None:
                return None
            if expected_version is not None and record.version != expected_version:
                raise StaleRecordError(billing_id)
            updated = dataclasses.replace(
                record,
                **copy.deepcopy(changes),
                version=record.version + 1,
                updated_at=time.time(),
            )
            self.billings[billing_id] = updated
            return copy.deepcopy(updated)

    def reserve_invoice_numbers(self, upto: int) -> int:
        """Move the counter past numbers handed out outside `create_billing`."""
        with self._lock:
            self.invoice_counter = max(self.invoice_counter, upto)
            return self.invoice_counter

    def save_user(self, user: UserRecord) -> None:
        with self._lock:
            self.users[user.user_id] = user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_subject(self, subject: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                if user.subject == subject:
                    return user
        return None

    def save_design(self, design: DesignRecord) -> None:
        with self._lock:
            self.designs[design.design_id] = design

    def get_design(self, design_id: str) -> Optional[DesignRecord]:
        with self._lock:
            return self.designs.get(design_id)

    def save_request(self, request: RequestRecord) -> None:
        with self._lock:
            self.requests[request.request_id] = request

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        with self._lock:
            return self.requests.get(request_id)

    def save_profile(self, profile: ProfileRecord) -> None:
        with self._lock:
            self.profiles[(profile.user_id, ProfileRole(profile.role).value)] = profile

    def get_profile(self, user_id: str, role: ProfileRole) -> Optional[ProfileRecord]:
        with self._lock:
            return self.profiles.get((user_id, ProfileRole(role).value))


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)
        self._ensure_sequence()

    def _ensure_sequence(self) -> None:
        with self.Session() as session:
            if session.get(SequenceRow, INVOICE_SEQUENCE) is not None:
                return
            # Rows that predate the sequence keep the numbers 1..N by creation
            # order, so new invoices start after them.
            existing = session.scalar(select(func.count()).select_from(BillingRow))
            highest = session.scalar(select(func.max(BillingRow.invoice_no)))
            session.add(
                SequenceRow(
                    name=INVOICE_SEQUENCE, value=max(existing or 0, highest or 0)
                )
            )
            session.commit()

    def _lock_sequence(self, session: Session) -> "SequenceRow":
        stmt = (
            select(SequenceRow)
            .where(SequenceRow.name == INVOICE_SEQUENCE)
            .with_for_update()
        )
        return session.execute(stmt).scalar_one()

    def _next_sequence_value(self, session: Session) -> int:
        seq = self._lock_sequence(session)
        seq.value += 1
        return seq.value

    def _to_billing_record(self, row: "BillingRow") -> BillingRecord:
        return BillingRecord(
            billing_id=row.billing_id,
            design_id=row.design_id,
            client_id=row.client_id,
            designer_id=row.designer_id,
            total_shirts=row.total_shirts,
            printing_fee=row.printing_fee,
            revision_fee=row.revision_fee,
            designer_fee=row.designer_fee,
            starting_amount=row.starting_amount,
            addons_shirt_price=row.addons_shirt_price or 0.0,
            addons_fee=row.addons_fee or 0.0,
            final_amount=row.final_amount or 0.0,
            status=BillingStatus(row.status),
            negotiation_rounds=row.negotiation_rounds,
            negotiation_history=[
                NegotiationEntry.from_dict(entry)
                for entry in (row.negotiation_history or [])
            ],
            invoice_no=row.invoice_no,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_columns(changes: dict) -> dict:
        values = dict(changes)
        if "status" in values:
            values["status"] = BillingStatus(values["status"]).value
        if "negotiation_history" in values:
            values["negotiation_history"] = [
                entry.as_dict() for entry in values["negotiation_history"]
            ]
        return values

    def create_billing(self, record: BillingRecord) -> BillingRecord:
        now = time.time()
        with self.Session() as session:
            row = BillingRow(
                billing_id=record.billing_id or uuid.uuid4().hex,
                design_id=record.design_id,
                client_id=record.client_id,
                designer_id=record.designer_id,
                total_shirts=record.total_shirts,
                printing_fee=record.printing_fee,
                revision_fee=record.revision_fee,
                designer_fee=record.designer_fee,
                starting_amount=record.starting_amount,
                addons_shirt_price=record.addons_shirt_price,
                addons_fee=record.addons_fee,
                final_amount=record.final_amount,
                status=BillingStatus(record.status).value,
                negotiation_rounds=record.negotiation_rounds,
                negotiation_history=[
                    entry.as_dict() for entry in record.negotiation_history
                ],
                invoice_no=self._next_sequence_value(session),
                version=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # design_id is unique; the rollback also returns the sequence value.
                session.rollback()
                existing = session.execute(
                    select(BillingRow).where(BillingRow.design_id == record.design_id)
                ).scalar_one_or_none()
                if existing is None:
                    raise
                return self._to_billing_record(existing)
            session.refresh(row)
            return self._to_billing_record(row)

    def get_billing(self, billing_id: str) -> Optional[BillingRecord]:
        with self.Session() as session:
            row = session.get(BillingRow, billing_id)
            if not row:
                return None
            return self._to_billing_record(row)

    def find_billing_by_design(self, design_id: str) -> Optional[BillingRecord]:
        with self.Session() as session:
            row = session.execute(
                select(BillingRow).where(BillingRow.design_id == design_id)
            ).scalar_one_or_none()
            if not row:
                return None
            return self._to_billing_record(row)

    def list_billings(self) -> list[BillingRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(BillingRow).order_by(
                    BillingRow.created_at.asc(), BillingRow.invoice_no.asc()
                )
            ).scalars()
            return [self._to_billing_record(row) for row in rows]

    def update_billing(
        self,
        billing_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> Optional[BillingRecord]:
        values = self._to_columns(changes)
        values["version"] = BillingRow.version + 1
        values["updated_at"] = time.time()
        with self.Session() as session:
            stmt = update(BillingRow).where(BillingRow.billing_id == billing_id)
            if expected_version is not None:
                stmt = stmt.where(BillingRow.version == expected_version)
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                if session.get(BillingRow, billing_id) is None:
                    return None
                raise StaleRecordError(billing_id)
            session.commit()
            row = session.get(BillingRow, billing_id, populate_existing=True)
            return self._to_billing_record(row)

    def reserve_invoice_numbers(self, upto: int) -> int:
        """Move the sequence past numbers handed out outside `create_billing`."""
        with self.Session() as session:
            seq = self._lock_sequence(session)
            seq.value = max(seq.value, upto)
            session.commit()
            return seq.value

    def save_user(self, user: UserRecord) -> None:
        with self.Session() as session:
            session.merge(
                UserRow(
                    user_id=user.user_id,
                    subject=user.subject,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email,
                )
            )
            session.commit()

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_subject(self, subject: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.subject == subject).limit(1)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    @staticmethod
    def _to_user_record(row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.user_id,
            subject=row.subject,
            first_name=row.first_name or "",
            last_name=row.last_name or "",
            email=row.email or "",
        )

    def save_design(self, design: DesignRecord) -> None:
        with self.Session() as session:
            session.merge(DesignRow(**dataclasses.asdict(design)))
            session.commit()

    def get_design(self, design_id: str) -> Optional[DesignRecord]:
        with self.Session() as session:
            row = session.get(DesignRow, design_id)
            if not row:
                return None
            return DesignRecord(
                design_id=row.design_id,
                request_id=row.request_id,
                client_id=row.client_id,
                designer_id=row.designer_id,
                status=row.status,
            )

    def save_request(self, request: RequestRecord) -> None:
        with self.Session() as session:
            session.merge(RequestRow(**dataclasses.asdict(request)))
            session.commit()

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        with self.Session() as session:
            row = session.get(RequestRow, request_id)
            if not row:
                return None
            return RequestRecord(
                request_id=row.request_id,
                client_id=row.client_id,
                request_title=row.request_title,
                description=row.description or "",
            )

    def save_profile(self, profile: ProfileRecord) -> None:
        with self.Session() as session:
            session.merge(
                ProfileRow(
                    user_id=profile.user_id,
                    role=ProfileRole(profile.role).value,
                    phone=profile.phone,
                    address=profile.address,
                )
            )
            session.commit()

    def get_profile(self, user_id: str, role: ProfileRole) -> Optional[ProfileRecord]:
        with self.Session() as session:
            row = session.get(ProfileRow, (user_id, ProfileRole(role).value))
            if not row:
                return None
            return ProfileRecord(
                user_id=row.user_id,
                role=ProfileRole(row.role),
                phone=row.phone,
                address=row.address,
            )


Base = declarative_base()


class BillingRow(Base):
    __tablename__ = "billing"

    billing_id = Column(String, primary_key=True)
    design_id = Column(String, nullable=False, unique=True, index=True)
    client_id = Column(String, nullable=True, index=True)
    designer_id = Column(String, nullable=True, index=True)
    total_shirts = Column(Integer, nullable=False)
    printing_fee = Column(Float, nullable=False)
    revision_fee = Column(Float, nullable=False)
    designer_fee = Column(Float, nullable=False)
    starting_amount = Column(Float, nullable=False)
    addons_shirt_price = Column(Float, nullable=True, default=0.0)
    addons_fee = Column(Float, nullable=True, default=0.0)
    final_amount = Column(Float, nullable=False, default=0.0)
    status = Column(String, nullable=False, index=True)
    negotiation_rounds = Column(Integer, nullable=False, default=0)
    negotiation_history = Column(JSON, nullable=False, default=list)
    invoice_no = Column(Integer, nullable=True, unique=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class SequenceRow(Base):
    __tablename__ = "invoice_sequence"

    name = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class UserRow(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    subject = Column(String, nullable=False, unique=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    email = Column(String, nullable=True)


class DesignRow(Base):
    __tablename__ = "designs"

    design_id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    designer_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)


class RequestRow(Base):
    __tablename__ = "design_requests"

    request_id = Column(String, primary_key=True)
    client_id = Column(String, nullable=False, index=True)
    request_title = Column(String, nullable=False)
    description = Column(String, nullable=True)


class ProfileRow(Base):
    __tablename__ = "profiles"

    user_id = Column(String, primary_key=True)
    role = Column(String, primary_key=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
