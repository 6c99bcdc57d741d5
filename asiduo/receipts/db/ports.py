"""Store interfaces used by the receipt pipeline.

Each operation is a single-record atomic read or write. Components depend on
these interfaces only; the SQLite classes in this package implement them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal

from ..models import (
    Customer,
    CustomerSummary,
    LoyaltyProgram,
    Merchant,
    ProgramProgress,
    Purchase,
    WorkItem,
    WorkStatus,
)


class MerchantStore(ABC):
    @abstractmethod
    def get_merchant(self, slug: str) -> Merchant | None: ...

    @abstractmethod
    def list_merchants(self, limit: int | None = None) -> list[Merchant]: ...

    @abstractmethod
    def save_merchant(self, merchant: Merchant) -> None:
        """Insert or replace a merchant and index its entities' tax ids."""

    @abstractmethod
    def get_tax_index(self, tax_id: str) -> tuple[str, str] | None:
        """Return ``(merchant_slug, entity_id)`` for a tax id."""

    @abstractmethod
    def set_tax_index(self, tax_id: str, merchant_slug: str, entity_id: str) -> None: ...


class PurchaseStore(ABC):
    @abstractmethod
    def insert_purchase(self, purchase: Purchase) -> bool:
        """Insert if absent. Returns False when the id already exists."""

    @abstractmethod
    def get_purchase(self, merchant_slug: str, purchase_id: str) -> Purchase | None: ...

    @abstractmethod
    def find_by_invoice(
        self, merchant_slug: str, tax_id: str, invoice_number: str
    ) -> Purchase | None: ...

    @abstractmethod
    def find_by_work_item(self, merchant_slug: str, work_item_id: str) -> Purchase | None:
        """The purchase committed by a given work item, if any."""

    @abstractmethod
    def find_recent(
        self,
        merchant_slug: str,
        customer_id: str,
        amount: Decimal,
        since: datetime,
    ) -> list[Purchase]:
        """Purchases of one customer at one merchant with the exact amount."""

    @abstractmethod
    def list_purchases(
        self, merchant_slug: str | None = None, customer_id: str | None = None
    ) -> list[Purchase]: ...

    @abstractmethod
    def set_image_ref(self, merchant_slug: str, purchase_id: str, ref: str) -> bool:
        """Set ``receipt_image_ref`` only when it is missing."""

    @abstractmethod
    def write_audit(self, purchase: Purchase) -> None: ...

    @abstractmethod
    def enqueue_jobs(self, purchase: Purchase, jobs: list[str]) -> None:
        """Add outbox jobs for a purchase; existing jobs are left untouched."""

    @abstractmethod
    def pending_jobs(
        self, purchase_id: str | None = None, merchant_slug: str | None = None,
        limit: int = 100,
    ) -> list[dict]: ...

    @abstractmethod
    def mark_job(
        self, merchant_slug: str, purchase_id: str, job: str, *,
        done: bool, error: str | None = None,
    ) -> None: ...


class CustomerStore(ABC):
    @abstractmethod
    def get_customer(self, customer_id: str) -> Customer | None: ...

    @abstractmethod
    def ensure_customer(self, customer_id: str, name: str, now: datetime) -> Customer:
        """Create the customer if missing and bump ``last_active``."""

    @abstractmethod
    def get_summary(self, customer_id: str, merchant_slug: str) -> CustomerSummary | None: ...

    @abstractmethod
    def save_summary(
        self, customer_id: str, merchant_slug: str, summary: CustomerSummary
    ) -> None: ...

    @abstractmethod
    def get_merchant_customer(self, merchant_slug: str, customer_id: str) -> dict | None: ...

    @abstractmethod
    def save_merchant_customer(
        self, merchant_slug: str, customer_id: str, name: str, summary: CustomerSummary
    ) -> None: ...


class ProgressStore(ABC):
    @abstractmethod
    def list_programs(self, merchant_slug: str) -> list[LoyaltyProgram]: ...

    @abstractmethod
    def get_program(self, program_id: str) -> LoyaltyProgram | None: ...

    @abstractmethod
    def save_program(self, program: LoyaltyProgram) -> None: ...

    @abstractmethod
    def add_program_stats(
        self,
        program_id: str,
        participants: int = 0,
        rewards_redeemed: int = 0,
        revenue: Decimal = Decimal("0"),
    ) -> None: ...

    @abstractmethod
    def get_progress(
        self, customer_id: str, merchant_slug: str, program_id: str
    ) -> ProgramProgress | None: ...

    @abstractmethod
    def list_progress(self, customer_id: str, merchant_slug: str) -> list[ProgramProgress]: ...

    @abstractmethod
    def save_progress(self, progress: ProgramProgress) -> None: ...

    @abstractmethod
    def is_ticket_processed(self, customer_id: str, purchase_id: str) -> bool: ...

    @abstractmethod
    def mark_ticket_processed(
        self, customer_id: str, purchase_id: str, merchant_slug: str, results: list[dict]
    ) -> None: ...


class QueueStore(ABC):
    @abstractmethod
    def insert_item(self, item: WorkItem) -> None: ...

    @abstractmethod
    def get_item(self, item_id: str) -> WorkItem | None: ...

    @abstractmethod
    def claim_due(self, now: datetime, limit: int) -> list[WorkItem]:
        """Move due pending items to processing and increment attempts."""

    @abstractmethod
    def update_item(
        self,
        item_id: str,
        status: WorkStatus,
        *,
        last_error: str | None = None,
        next_attempt_at: datetime | None = None,
        result: dict | None = None,
        attempts: int | None = None,
    ) -> None: ...

    @abstractmethod
    def list_items(self, status: WorkStatus | None = None, limit: int = 50) -> list[WorkItem]: ...

    @abstractmethod
    def stale_items(self, older_than: datetime) -> list[WorkItem]:
        """Items stuck in processing since before ``older_than``."""
