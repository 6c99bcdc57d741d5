"""Data models for merchants, receipts, purchases, loyalty and queue items."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

_CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal | None:
    """Convert a number or numeric string to a 2dp Decimal."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


# ── Merchants ──────────────────────────────────────────────


@dataclass
class LegalEntity:
    """A legal entity (RUC holder) operating under a merchant brand."""

    id: str
    tax_id: str
    legal_name: str = ""
    address: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tax_id": self.tax_id,
            "legal_name": self.legal_name,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LegalEntity:
        return cls(
            id=data["id"],
            tax_id=data["tax_id"],
            legal_name=data.get("legal_name", ""),
            address=data.get("address", ""),
        )


@dataclass
class Merchant:
    slug: str
    name: str = ""
    legal_entities: list[LegalEntity] = field(default_factory=list)
    primary_entity_id: str = ""
    active: bool = True
    # Per-merchant extraction rule overrides: {field: [regex, ...]}
    extraction: dict[str, list[str]] = field(default_factory=dict)

    def entity_for_tax_id(self, tax_id: str) -> LegalEntity | None:
        for entity in self.legal_entities:
            if entity.tax_id == tax_id:
                return entity
        return None

    def to_dict(self) -> dict:
        return {
            "slug": self.slug,
            "name": self.name,
            "legal_entities": [e.to_dict() for e in self.legal_entities],
            "primary_entity_id": self.primary_entity_id,
            "active": self.active,
            "extraction": self.extraction,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Merchant:
        return cls(
            slug=data["slug"],
            name=data.get("name", ""),
            legal_entities=[
                LegalEntity.from_dict(e) for e in data.get("legal_entities", [])
            ],
            primary_entity_id=data.get("primary_entity_id", ""),
            active=data.get("active", True),
            extraction=data.get("extraction", {}),
        )


@dataclass
class MerchantRef:
    """A resolved merchant together with the entity that issued the receipt."""

    slug: str
    entity_id: str
    name: str = ""
    legal_name: str = ""
    address: str = ""
    extraction: dict[str, list[str]] = field(default_factory=dict)


# ── Receipts ───────────────────────────────────────────────


@dataclass
class LineItem:
    description: str
    quantity: float = 1.0
    unit_price: Decimal | None = None
    subtotal: Decimal | None = None

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price) if self.unit_price is not None else None,
            "subtotal": str(self.subtotal) if self.subtotal is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LineItem:
        return cls(
            description=data["description"],
            quantity=data.get("quantity", 1.0),
            unit_price=to_money(data.get("unit_price")),
            subtotal=to_money(data.get("subtotal")),
        )


@dataclass
class ReceiptFacts:
    """Structured facts extracted from one OCR pass over a receipt."""

    tax_id: str | None = None
    amount: Decimal | None = None
    amount_in_words: str | None = None
    amount_source: str | None = None  # "numeric" | "words"
    invoice_number: str | None = None
    merchant_name_raw: str | None = None
    address_raw: str | None = None
    vendor_name: str | None = None
    issued_date: date | None = None
    line_items: list[LineItem] = field(default_factory=list)
    raw_text: str = ""
    matched_rules: dict[str, str] = field(default_factory=dict)

    def missing(self, required: tuple[str, ...] = ("tax_id", "amount")) -> list[str]:
        """Return the names of required fields that were not extracted."""
        return [name for name in required if getattr(self, name) in (None, "")]

    def to_dict(self) -> dict:
        return {
            "tax_id": self.tax_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "amount_in_words": self.amount_in_words,
            "amount_source": self.amount_source,
            "invoice_number": self.invoice_number,
            "merchant_name_raw": self.merchant_name_raw,
            "address_raw": self.address_raw,
            "vendor_name": self.vendor_name,
            "issued_date": self.issued_date.isoformat() if self.issued_date else None,
            "line_items": [i.to_dict() for i in self.line_items],
            "matched_rules": dict(self.matched_rules),
        }


# ── Purchases & customers ──────────────────────────────────


def derive_purchase_id(
    customer_id: str,
    merchant_slug: str,
    created_at: datetime,
    tax_id: str | None = None,
    invoice_number: str | None = None,
) -> str:
    """Build the deterministic purchase id.

    (tax_id, invoice_number) identifies a physical receipt; without both the
    id falls back to customer + merchant + creation instant.
    """
    if tax_id and invoice_number:
        return f"{tax_id}-{invoice_number}"
    millis = int(created_at.timestamp() * 1000)
    return f"{merchant_slug}_{customer_id}_{millis}"


@dataclass
class Purchase:
    id: str
    customer_id: str
    merchant_slug: str
    amount: Decimal
    entity_id: str = ""
    tax_id: str | None = None
    invoice_number: str | None = None
    address: str | None = None
    receipt_image_ref: str | None = None
    verified: bool = True
    created_at: datetime = field(default_factory=utcnow)
    line_items: list[LineItem] = field(default_factory=list)
    raw_text: str = ""
    work_item_id: str | None = None

    @classmethod
    def from_facts(
        cls,
        facts: ReceiptFacts,
        customer_id: str,
        merchant: MerchantRef,
        created_at: datetime | None = None,
        work_item_id: str | None = None,
    ) -> Purchase:
        created_at = created_at or utcnow()
        return cls(
            id=derive_purchase_id(
                customer_id,
                merchant.slug,
                created_at,
                tax_id=facts.tax_id,
                invoice_number=facts.invoice_number,
            ),
            customer_id=customer_id,
            merchant_slug=merchant.slug,
            entity_id=merchant.entity_id,
            amount=facts.amount,
            tax_id=facts.tax_id,
            invoice_number=facts.invoice_number,
            address=facts.address_raw or merchant.address or None,
            created_at=created_at,
            line_items=list(facts.line_items),
            raw_text=facts.raw_text,
            work_item_id=work_item_id,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "merchant_slug": self.merchant_slug,
            "entity_id": self.entity_id,
            "amount": str(self.amount),
            "tax_id": self.tax_id,
            "invoice_number": self.invoice_number,
            "address": self.address,
            "receipt_image_ref": self.receipt_image_ref,
            "verified": self.verified,
            "created_at": to_iso(self.created_at),
            "line_items": [i.to_dict() for i in self.line_items],
            "raw_text": self.raw_text,
            "work_item_id": self.work_item_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Purchase:
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            merchant_slug=data["merchant_slug"],
            entity_id=data.get("entity_id", ""),
            amount=to_money(data["amount"]),
            tax_id=data.get("tax_id"),
            invoice_number=data.get("invoice_number"),
            address=data.get("address"),
            receipt_image_ref=data.get("receipt_image_ref"),
            verified=data.get("verified", True),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            line_items=[LineItem.from_dict(i) for i in data.get("line_items", [])],
            raw_text=data.get("raw_text", ""),
            work_item_id=data.get("work_item_id"),
        )


@dataclass
class RecordResult:
    success: bool
    purchase: Purchase
    created: bool = True
    fanout_errors: list[str] = field(default_factory=list)


@dataclass
class CustomerSummary:
    purchase_count: int = 0
    total_spent: Decimal = Decimal("0.00")
    first_visit: datetime | None = None
    last_visit: datetime | None = None


@dataclass
class Customer:
    id: str  # E.164 phone number
    name: str = "Cliente"
    created_at: datetime | None = None
    last_active: datetime | None = None
    summaries: dict[str, CustomerSummary] = field(default_factory=dict)


# ── Loyalty ────────────────────────────────────────────────


class ProgramType(str, Enum):
    VISITS = "visits"
    SPECIFIC_PRODUCT = "specific_product"
    TICKET_VALUE = "ticket_value"
    POINTS = "points"


class ProgramStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass
class RewardTier:
    points: int
    reward: str

    def to_dict(self) -> dict:
        return {"points": self.points, "reward": self.reward}


@dataclass
class LoyaltyProgram:
    id: str
    merchant_slug: str
    type: ProgramType
    name: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    status: ProgramStatus = ProgramStatus.ACTIVE
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> int | None:
        target = self.config.get("target")
        return int(target) if target is not None else None

    @property
    def reward_tiers(self) -> list[RewardTier]:
        tiers = [
            RewardTier(points=int(r["points"]), reward=r.get("reward", ""))
            for r in self.config.get("rewards", [])
        ]
        return sorted(tiers, key=lambda t: t.points)

    def is_valid_at(self, now: datetime) -> bool:
        if self.status != ProgramStatus.ACTIVE:
            return False
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_to is not None and now > self.valid_to:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_slug": self.merchant_slug,
            "type": self.type.value,
            "name": self.name,
            "config": self.config,
            "priority": self.priority,
            "status": self.status.value,
            "valid_from": to_iso(self.valid_from),
            "valid_to": to_iso(self.valid_to),
            "stats": self.stats,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LoyaltyProgram:
        return cls(
            id=data["id"],
            merchant_slug=data["merchant_slug"],
            type=ProgramType(data["type"]),
            name=data.get("name", ""),
            config=data.get("config", {}),
            priority=data.get("priority", 0),
            status=ProgramStatus(data.get("status", "active")),
            valid_from=from_iso(data.get("valid_from")),
            valid_to=from_iso(data.get("valid_to")),
            stats=data.get("stats", {}),
        )


@dataclass
class HistoryEntry:
    ticket_id: str
    at: datetime
    entity_id: str = ""
    increment: int = 0
    points_earned: int = 0
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "ticket_id": self.ticket_id,
            "at": to_iso(self.at),
            "entity_id": self.entity_id,
            "increment": self.increment,
            "points_earned": self.points_earned,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> HistoryEntry:
        return cls(
            ticket_id=data["ticket_id"],
            at=from_iso(data.get("at")) or utcnow(),
            entity_id=data.get("entity_id", ""),
            increment=data.get("increment", 0),
            points_earned=data.get("points_earned", 0),
            detail=data.get("detail", {}),
        )


@dataclass
class Redemption:
    reward: str
    at: datetime
    points_spent: int = 0
    count_spent: int = 0

    def to_dict(self) -> dict:
        return {
            "reward": self.reward,
            "at": to_iso(self.at),
            "points_spent": self.points_spent,
            "count_spent": self.count_spent,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Redemption:
        return cls(
            reward=data.get("reward", ""),
            at=from_iso(data.get("at")) or utcnow(),
            points_spent=data.get("points_spent", 0),
            count_spent=data.get("count_spent", 0),
        )


@dataclass
class ProgramProgress:
    """Per-customer progress in one loyalty program of one merchant."""

    customer_id: str
    merchant_slug: str
    program_id: str
    type: ProgramType
    current_count: int = 0
    current_points: int = 0
    total_points_earned: int = 0
    target: int | None = None
    can_redeem: bool = False
    history: list[HistoryEntry] = field(default_factory=list)
    redemptions: list[Redemption] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._ticket_ids: set[str] = {h.ticket_id for h in self.history}

    def has_ticket(self, ticket_id: str) -> bool:
        return ticket_id in self._ticket_ids

    def append(self, entry: HistoryEntry) -> None:
        if entry.ticket_id in self._ticket_ids:
            raise ValueError(f"ticket ya registrado: {entry.ticket_id}")
        self.history.append(entry)
        self._ticket_ids.add(entry.ticket_id)

    @property
    def is_new(self) -> bool:
        return not self.history and not self.redemptions

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "merchant_slug": self.merchant_slug,
            "program_id": self.program_id,
            "type": self.type.value,
            "current_count": self.current_count,
            "current_points": self.current_points,
            "total_points_earned": self.total_points_earned,
            "target": self.target,
            "can_redeem": self.can_redeem,
            "history": [h.to_dict() for h in self.history],
            "redemptions": [r.to_dict() for r in self.redemptions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProgramProgress:
        return cls(
            customer_id=data["customer_id"],
            merchant_slug=data["merchant_slug"],
            program_id=data["program_id"],
            type=ProgramType(data["type"]),
            current_count=data.get("current_count", 0),
            current_points=data.get("current_points", 0),
            total_points_earned=data.get("total_points_earned", 0),
            target=data.get("target"),
            can_redeem=data.get("can_redeem", False),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
            redemptions=[
                Redemption.from_dict(r) for r in data.get("redemptions", [])
            ],
        )


@dataclass
class ProgramResult:
    program_id: str
    program_type: ProgramType
    program_name: str = ""
    eligible: bool = False
    can_redeem: bool = False
    became_redeemable: bool = False
    progress: int = 0
    target: int | None = None
    points_earned: int = 0
    total_points: int = 0
    available_rewards: list[RewardTier] = field(default_factory=list)
    reason: str = ""
    error: str | None = None
    already_credited: bool = False
    new_participant: bool = False

    def to_dict(self) -> dict:
        return {
            "program_id": self.program_id,
            "program_type": self.program_type.value,
            "program_name": self.program_name,
            "eligible": self.eligible,
            "can_redeem": self.can_redeem,
            "became_redeemable": self.became_redeemable,
            "progress": self.progress,
            "target": self.target,
            "points_earned": self.points_earned,
            "total_points": self.total_points,
            "available_rewards": [r.to_dict() for r in self.available_rewards],
            "reason": self.reason,
            "error": self.error,
            "already_credited": self.already_credited,
        }


# ── Work queue ─────────────────────────────────────────────


class WorkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


@dataclass
class WorkItem:
    id: str
    payload: dict[str, Any]
    status: WorkStatus = WorkStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime | None = None
    result: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def customer_ref(self) -> str:
        return self.payload.get("customer_ref", "")
