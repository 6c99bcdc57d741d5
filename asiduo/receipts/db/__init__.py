"""SQLite storage for merchants, purchases, customers, loyalty and the work queue."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .customers import CustomerDB
from .merchants import MerchantDB
from .ports import CustomerStore, MerchantStore, ProgressStore, PurchaseStore, QueueStore
from .progress import LoyaltyDB
from .purchases import PurchaseDB
from .queue import QueueDB
from .schema import ensure_schema


@dataclass
class Stores:
    """One store per concern, all backed by the same database file."""

    merchants: MerchantDB
    purchases: PurchaseDB
    customers: CustomerDB
    loyalty: LoyaltyDB
    queue: QueueDB

    def close(self) -> None:
        for store in (self.merchants, self.purchases, self.customers, self.loyalty, self.queue):
            store.close()


def open_stores(db_path: str | Path) -> Stores:
    return Stores(
        merchants=MerchantDB(db_path),
        purchases=PurchaseDB(db_path),
        customers=CustomerDB(db_path),
        loyalty=LoyaltyDB(db_path),
        queue=QueueDB(db_path),
    )


__all__ = [
    "CustomerDB",
    "CustomerStore",
    "LoyaltyDB",
    "MerchantDB",
    "MerchantStore",
    "ProgressStore",
    "PurchaseDB",
    "PurchaseStore",
    "QueueDB",
    "QueueStore",
    "Stores",
    "ensure_schema",
    "open_stores",
]
