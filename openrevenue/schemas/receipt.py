"""
Receipt Schemas
===============

Pydantic schemas for receipt submission.
"""

from typing import Optional

from pydantic import BaseModel, Field

from openrevenue.services.purchases import ReceiptClaim


class ReceiptRequest(BaseModel):
    """
    Receipt submission.

    ``receipt_data`` is required for ``app_store``; ``purchase_token``
    (and ``package_name`` unless configured on the app) for ``play_store``.
    Missing proof is reported as a verification failure, not a 400 from
    schema validation, so the attempt is still audited.
    """

    app_user_id: str = Field(min_length=1, max_length=255)
    product_id: str = Field(min_length=1, max_length=255)
    store: str = Field(default="app_store", min_length=1, max_length=32)
    receipt_data: Optional[str] = None
    purchase_token: Optional[str] = None
    package_name: Optional[str] = Field(default=None, max_length=255)
    transaction_id: Optional[str] = Field(default=None, max_length=255)
    entitlement_id: Optional[str] = Field(default=None, max_length=255)
    purchase_date_ms: Optional[int] = None
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    def to_claim(self) -> ReceiptClaim:
        return ReceiptClaim(
            app_user_id=self.app_user_id,
            product_id=self.product_id,
            store=self.store,
            receipt_data=self.receipt_data,
            purchase_token=self.purchase_token,
            package_name=self.package_name,
            transaction_id=self.transaction_id,
            entitlement_id=self.entitlement_id,
            purchase_date_ms=self.purchase_date_ms,
            price=self.price,
            currency=self.currency.upper() if self.currency else None,
        )
