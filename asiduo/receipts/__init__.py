"""Receipt intake and loyalty crediting for Asiduo merchants."""

from .config import (
    ArchiveConfig,
    DatabaseConfig,
    OCRConfig,
    QueueConfig,
    ReceiptsConfig,
    WhatsAppConfig,
    load_config,
)
from .errors import (
    CollaboratorError,
    DuplicateReceipt,
    InsufficientReceiptData,
    InvariantViolation,
    ReceiptError,
    UnknownMerchant,
)
from .extraction import TextExtractor, extract, register_overrides
from .ledger import PurchaseLedger
from .loyalty import LoyaltyEngine
from .models import (
    LoyaltyProgram,
    Merchant,
    ProgramResult,
    ProgramType,
    Purchase,
    ReceiptFacts,
    WorkItem,
    WorkStatus,
)
from .pipeline import ReceiptPipeline, build_pipeline
from .queue import DeliveryCoordinator, create_coordinator
from .words import words_to_number

__version__ = "0.1.0"

__all__ = [
    "TextExtractor",
    "extract",
    "register_overrides",
    "words_to_number",
    "ReceiptFacts",
    "Merchant",
    "Purchase",
    "LoyaltyProgram",
    "ProgramType",
    "ProgramResult",
    "WorkItem",
    "WorkStatus",
    "PurchaseLedger",
    "LoyaltyEngine",
    "ReceiptPipeline",
    "build_pipeline",
    "DeliveryCoordinator",
    "create_coordinator",
    "ReceiptError",
    "InsufficientReceiptData",
    "UnknownMerchant",
    "DuplicateReceipt",
    "InvariantViolation",
    "CollaboratorError",
    "ReceiptsConfig",
    "DatabaseConfig",
    "OCRConfig",
    "WhatsAppConfig",
    "QueueConfig",
    "ArchiveConfig",
    "load_config",
]
