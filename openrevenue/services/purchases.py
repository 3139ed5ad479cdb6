"""
Purchase Types
==============

Value types shared by the store verifier, the reconciler and the
webhook ingestor.

A verification returns exactly one of ``AppStoreVerification``,
``PlayStoreVerification`` or ``VerificationFailure``.  Both success
variants are ``PurchaseFact``s, the canonical shape the reconciler
consumes; webhooks build a plain ``PurchaseFact`` from their payload.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


class FailureKind(str, Enum):
    """Who has to act on a verification failure."""
    INVALID_INPUT = "invalid_input"    # client sent an incomplete claim
    REJECTED = "rejected"              # the store said no, or said nonsense
    CONFIGURATION = "configuration"    # tenant store credentials missing/bad
    UNAVAILABLE = "unavailable"        # store unreachable or too slow


class FailureReason(str, Enum):
    """Verification failure reason codes (stored as the receipt status)."""
    # Receipt-blob store
    MISSING_SHARED_SECRET = "missing_shared_secret"
    MISSING_RECEIPT_DATA = "missing_receipt_data"
    PRODUCT_NOT_IN_RECEIPT = "product_not_in_receipt"
    # Token-based store
    MISSING_SERVICE_ACCOUNT = "missing_service_account"
    INVALID_SERVICE_ACCOUNT = "invalid_service_account"
    ASSERTION_SIGNING_FAILED = "assertion_signing_failed"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    MISSING_PURCHASE_TOKEN = "missing_purchase_token"
    MISSING_PACKAGE_NAME = "missing_package_name"
    # Both
    UNSUPPORTED_STORE = "unsupported_store"
    STORE_REJECTED = "store_rejected"
    STORE_TIMEOUT = "store_timeout"
    STORE_REQUEST_FAILED = "store_request_failed"
    VERIFICATION_FAILED = "verification_failed"

    @property
    def kind(self) -> FailureKind:
        return _REASON_KINDS[self]


_REASON_KINDS: dict[FailureReason, FailureKind] = {
    FailureReason.MISSING_SHARED_SECRET: FailureKind.CONFIGURATION,
    FailureReason.MISSING_RECEIPT_DATA: FailureKind.INVALID_INPUT,
    FailureReason.PRODUCT_NOT_IN_RECEIPT: FailureKind.REJECTED,
    FailureReason.MISSING_SERVICE_ACCOUNT: FailureKind.CONFIGURATION,
    FailureReason.INVALID_SERVICE_ACCOUNT: FailureKind.CONFIGURATION,
    FailureReason.ASSERTION_SIGNING_FAILED: FailureKind.CONFIGURATION,
    FailureReason.TOKEN_EXCHANGE_FAILED: FailureKind.CONFIGURATION,
    FailureReason.MISSING_PURCHASE_TOKEN: FailureKind.INVALID_INPUT,
    FailureReason.MISSING_PACKAGE_NAME: FailureKind.INVALID_INPUT,
    FailureReason.UNSUPPORTED_STORE: FailureKind.INVALID_INPUT,
    FailureReason.STORE_REJECTED: FailureKind.REJECTED,
    FailureReason.STORE_TIMEOUT: FailureKind.UNAVAILABLE,
    FailureReason.STORE_REQUEST_FAILED: FailureKind.UNAVAILABLE,
    FailureReason.VERIFICATION_FAILED: FailureKind.REJECTED,
}


# Widths of the columns that persist identifiers from claims, stores and webhooks
MAX_ID_LENGTH = 255
MAX_STORE_LENGTH = 32
MAX_EVENT_TYPE_LENGTH = 64


_STORE_ALIASES = {
    "app_store": "app_store",
    "appstore": "app_store",
    "apple": "app_store",
    "ios": "app_store",
    "mac_app_store": "app_store",
    "play_store": "play_store",
    "playstore": "play_store",
    "google": "play_store",
    "google_play": "play_store",
    "android": "play_store",
}


def parse_store(value: Any) -> Optional[str]:
    """Map a store name as sent by clients or webhooks to ``app_store``/``play_store``; anything else is None."""
    if not isinstance(value, str):
        return None
    return _STORE_ALIASES.get(value.strip().lower())


# =============================================================================
# Inputs
# =============================================================================

@dataclass(frozen=True)
class StoreCredentials:
    """Per-tenant store configuration needed for verification."""
    app_store_shared_secret: Optional[str] = None
    app_store_bundle_id: Optional[str] = None
    play_store_service_account_json: Optional[str] = None
    play_store_package_name: Optional[str] = None

    @classmethod
    def from_app(cls, app: Any) -> "StoreCredentials":
        return cls(
            app_store_shared_secret=app.app_store_shared_secret,
            app_store_bundle_id=app.app_store_bundle_id,
            play_store_service_account_json=app.play_store_service_account_json,
            play_store_package_name=app.play_store_package_name,
        )


@dataclass(frozen=True)
class ReceiptClaim:
    """
    What a client asserts about a purchase.

    ``receipt_data`` is the proof blob for the receipt-blob store;
    ``purchase_token`` (plus ``package_name``) is the proof for the
    token-based store.
    """
    app_user_id: str
    product_id: str
    store: str = "app_store"
    receipt_data: Optional[str] = None
    purchase_token: Optional[str] = None
    package_name: Optional[str] = None
    transaction_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    purchase_date_ms: Optional[int] = None
    price: Optional[float] = None
    currency: Optional[str] = None

    def audit_payload(self) -> dict[str, Any]:
        """The claim as recorded on the receipt row, without proof material."""
        data = asdict(self)
        data.pop("receipt_data", None)
        data.pop("purchase_token", None)
        data["has_receipt_data"] = bool(self.receipt_data)
        data["has_purchase_token"] = bool(self.purchase_token)
        return data


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class PurchaseFact:
    """A verified (or webhook-asserted) purchase, normalized across stores."""
    store: str
    product_id: str
    entitlement_id: str
    transaction_id: Optional[str]
    purchase_time: datetime
    expiry_time: Optional[datetime]  # None = non-expiring
    environment: str = "production"
    amount_cents: Optional[int] = None
    currency: Optional[str] = None

    @property
    def is_sandbox(self) -> bool:
        return self.environment == "sandbox"


@dataclass(frozen=True)
class AppStoreVerification(PurchaseFact):
    """Successful receipt-blob verification."""
    original_transaction_id: Optional[str] = None
    bundle_id: Optional[str] = None


@dataclass(frozen=True)
class PlayStoreVerification(PurchaseFact):
    """Successful token-based verification."""
    order_id: Optional[str] = None
    package_name: Optional[str] = None
    auto_renewing: Optional[bool] = None
    payment_state: Optional[int] = None


@dataclass(frozen=True)
class VerificationFailure:
    """Why a claim could not be verified. ``detail`` is for logs and audit only."""
    store: str
    reason: FailureReason
    detail: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> FailureKind:
        return self.reason.kind


VerificationResult = Union[AppStoreVerification, PlayStoreVerification, VerificationFailure]
