"""
Store Verifier
==============

Turns a client's purchase claim into a store-confirmed ``PurchaseFact``.

Two stores are supported:

- **App Store** (receipt blob): the blob and the tenant's shared secret
  are posted to ``verifyReceipt``.  A sandbox receipt sent to production
  (status 21007) is retried once against sandbox, and the reverse
  (21008) once against production.
- **Play Store** (purchase token): an RS256 assertion signed with the
  tenant's service-account key is exchanged for an access token, which
  then reads the subscription purchase from the Android Publisher API.

The verifier has no durable side effects and never raises for bad
input or bad store responses: every problem comes back as a
``VerificationFailure`` with a reason code.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Union
from urllib.parse import quote

import httpx
from jose.exceptions import JOSEError

from openrevenue.config import settings
from openrevenue.core.security import create_service_account_assertion
from openrevenue.models.subscription import Store, StoreEnvironment
from openrevenue.services.purchases import (
    MAX_ID_LENGTH,
    MAX_STORE_LENGTH,
    AppStoreVerification,
    FailureReason,
    PlayStoreVerification,
    ReceiptClaim,
    StoreCredentials,
    VerificationFailure,
    VerificationResult,
    parse_store,
)
from openrevenue.utils.helpers import bounded_text, from_millis

logger = logging.getLogger(__name__)


# verifyReceipt status codes
APP_STORE_STATUS_OK = 0
APP_STORE_STATUS_SANDBOX_RECEIPT = 21007
APP_STORE_STATUS_PRODUCTION_RECEIPT = 21008

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def _purchase_sort_key(transaction: dict[str, Any]) -> int:
    try:
        return int(transaction.get("purchase_date_ms") or 0)
    except (TypeError, ValueError):
        return 0


def _expiry(value: Any) -> tuple[Optional[datetime], bool]:
    """(expiry, readable). An absent value means non-expiring; a present but unreadable one is not."""
    if value is None or value == "":
        return None, True
    expiry = from_millis(value)
    return expiry, expiry is not None


def _price_to_cents(price: Optional[float]) -> Optional[int]:
    if price is None:
        return None
    return int(round(price * 100))


class StoreVerifier:
    """
    Verifies purchase claims against the stores.

    An ``httpx.AsyncClient`` may be injected (tests use one backed by
    ``httpx.MockTransport``); otherwise a short-lived client with the
    configured timeout is opened per verification.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.timeout = timeout or settings.STORE_REQUEST_TIMEOUT_SECONDS

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def verify(
        self,
        credentials: StoreCredentials,
        claim: ReceiptClaim,
    ) -> VerificationResult:
        """Verify a claim against the store it names."""
        store = parse_store(claim.store)
        if store == Store.APP_STORE.value:
            result = await self.verify_app_store(credentials, claim)
        elif store == Store.PLAY_STORE.value:
            result = await self.verify_play_store(credentials, claim)
        else:
            result = VerificationFailure(
                store=str(claim.store)[:MAX_STORE_LENGTH],
                reason=FailureReason.UNSUPPORTED_STORE,
                detail=f"Unsupported store: {claim.store}",
            )

        if isinstance(result, VerificationFailure):
            logger.info(
                "Verification failed for product %s on %s: %s (%s)",
                claim.product_id, result.store, result.reason.value, result.detail,
            )
        return result

    # =========================================================================
    # App Store
    # =========================================================================

    async def verify_app_store(
        self,
        credentials: StoreCredentials,
        claim: ReceiptClaim,
    ) -> Union[AppStoreVerification, VerificationFailure]:
        store = Store.APP_STORE.value

        if not credentials.app_store_shared_secret:
            return VerificationFailure(store, FailureReason.MISSING_SHARED_SECRET)
        if not claim.receipt_data:
            return VerificationFailure(store, FailureReason.MISSING_RECEIPT_DATA)

        body = {
            "receipt-data": claim.receipt_data,
            "password": credentials.app_store_shared_secret,
            "exclude-old-transactions": False,
        }

        url = settings.APP_STORE_PRODUCTION_URL
        response = await self._post_verify_receipt(url, body)
        if isinstance(response, VerificationFailure):
            return response

        status = response.get("status")
        fallback_url = {
            APP_STORE_STATUS_SANDBOX_RECEIPT: settings.APP_STORE_SANDBOX_URL,
            APP_STORE_STATUS_PRODUCTION_RECEIPT: settings.APP_STORE_PRODUCTION_URL,
        }.get(status)
        if fallback_url is not None:
            logger.info("verifyReceipt status %s, retrying against %s", status, fallback_url)
            url = fallback_url
            response = await self._post_verify_receipt(url, body)
            if isinstance(response, VerificationFailure):
                return response
            status = response.get("status")

        if not isinstance(status, int):
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Missing status in response"
            )
        if status != APP_STORE_STATUS_OK:
            return VerificationFailure(
                store,
                FailureReason.STORE_REJECTED,
                detail=f"verifyReceipt status {status}",
                extra={"status": status},
            )

        return self._select_app_store_transaction(credentials, claim, response, url)

    async def _post_verify_receipt(
        self,
        url: str,
        body: dict[str, Any],
    ) -> Union[dict[str, Any], VerificationFailure]:
        store = Store.APP_STORE.value
        try:
            async with self._http() as client:
                response = await client.post(url, json=body, timeout=self.timeout)
        except httpx.TimeoutException:
            logger.warning("verifyReceipt timed out: %s", url)
            return VerificationFailure(store, FailureReason.STORE_TIMEOUT, detail=url)
        except httpx.HTTPError as e:
            logger.warning("verifyReceipt request failed: %s: %s", url, e)
            return VerificationFailure(store, FailureReason.STORE_REQUEST_FAILED, detail=str(e))

        if response.status_code >= 500:
            return VerificationFailure(
                store,
                FailureReason.STORE_REQUEST_FAILED,
                detail=f"HTTP {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Response is not JSON"
            )
        if not isinstance(data, dict):
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Response is not an object"
            )
        return data

    def _select_app_store_transaction(
        self,
        credentials: StoreCredentials,
        claim: ReceiptClaim,
        data: dict[str, Any],
        url: str,
    ) -> Union[AppStoreVerification, VerificationFailure]:
        store = Store.APP_STORE.value
        receipt = data.get("receipt") if isinstance(data.get("receipt"), dict) else {}

        bundle_id = receipt.get("bundle_id")
        if credentials.app_store_bundle_id and bundle_id and bundle_id != credentials.app_store_bundle_id:
            return VerificationFailure(
                store,
                FailureReason.STORE_REJECTED,
                detail=f"Receipt bundle {bundle_id} does not match app",
            )

        transactions = data.get("latest_receipt_info") or receipt.get("in_app") or []
        if not isinstance(transactions, list):
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Malformed transaction list"
            )

        candidates = [
            t for t in transactions
            if isinstance(t, dict) and t.get("product_id") == claim.product_id
        ]
        if not candidates:
            return VerificationFailure(
                store,
                FailureReason.PRODUCT_NOT_IN_RECEIPT,
                detail=f"No transaction for {claim.product_id}",
            )

        chosen = None
        if claim.transaction_id:
            chosen = next(
                (t for t in candidates if str(t.get("transaction_id")) == claim.transaction_id),
                None,
            )
        if chosen is None:
            chosen = max(candidates, key=_purchase_sort_key)

        purchase_time = (
            from_millis(chosen.get("purchase_date_ms"))
            or from_millis(claim.purchase_date_ms)
        )
        if purchase_time is None:
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Transaction has no purchase date"
            )

        expiry_time, expiry_readable = _expiry(chosen.get("expires_date_ms"))
        if not expiry_readable:
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Unreadable expires_date_ms"
            )

        environment_name = str(data.get("environment") or "").lower()
        if environment_name == "sandbox" or url == settings.APP_STORE_SANDBOX_URL:
            environment = StoreEnvironment.SANDBOX.value
        else:
            environment = StoreEnvironment.PRODUCTION.value

        transaction_id = bounded_text(chosen.get("transaction_id"), MAX_ID_LENGTH)
        original_transaction_id = bounded_text(chosen.get("original_transaction_id"), MAX_ID_LENGTH)
        return AppStoreVerification(
            store=store,
            product_id=claim.product_id,
            entitlement_id=claim.entitlement_id or claim.product_id,
            transaction_id=transaction_id,
            purchase_time=purchase_time,
            expiry_time=expiry_time,
            environment=environment,
            amount_cents=_price_to_cents(claim.price),
            currency=claim.currency,
            original_transaction_id=original_transaction_id,
            bundle_id=bundle_id,
        )

    # =========================================================================
    # Play Store
    # =========================================================================

    async def verify_play_store(
        self,
        credentials: StoreCredentials,
        claim: ReceiptClaim,
    ) -> Union[PlayStoreVerification, VerificationFailure]:
        store = Store.PLAY_STORE.value

        if not credentials.play_store_service_account_json:
            return VerificationFailure(store, FailureReason.MISSING_SERVICE_ACCOUNT)
        if not claim.purchase_token:
            return VerificationFailure(store, FailureReason.MISSING_PURCHASE_TOKEN)
        package_name = claim.package_name or credentials.play_store_package_name
        if not package_name:
            return VerificationFailure(store, FailureReason.MISSING_PACKAGE_NAME)

        service_account = self._load_service_account(credentials.play_store_service_account_json)
        if isinstance(service_account, VerificationFailure):
            return service_account

        assertion = self._sign_assertion(service_account)
        if isinstance(assertion, VerificationFailure):
            return assertion

        access_token = await self._exchange_assertion(service_account, assertion)
        if isinstance(access_token, VerificationFailure):
            return access_token

        purchase = await self._get_subscription_purchase(
            access_token, package_name, claim.product_id, claim.purchase_token
        )
        if isinstance(purchase, VerificationFailure):
            return purchase

        return self._normalize_play_purchase(claim, package_name, purchase)

    def _load_service_account(
        self,
        raw: str,
    ) -> Union[dict[str, Any], VerificationFailure]:
        store = Store.PLAY_STORE.value
        try:
            data = json.loads(raw)
        except ValueError:
            return VerificationFailure(
                store, FailureReason.INVALID_SERVICE_ACCOUNT, detail="Credentials are not JSON"
            )
        if not isinstance(data, dict) or not data.get("client_email") or not data.get("private_key"):
            return VerificationFailure(
                store,
                FailureReason.INVALID_SERVICE_ACCOUNT,
                detail="Credentials need client_email and private_key",
            )
        return data

    def _sign_assertion(
        self,
        service_account: dict[str, Any],
    ) -> Union[str, VerificationFailure]:
        """Sign the short-lived assertion presented to the token endpoint."""
        try:
            return create_service_account_assertion(
                service_account,
                scope=settings.PLAY_STORE_SCOPE,
                audience=service_account.get("token_uri") or settings.GOOGLE_TOKEN_URI,
                ttl_seconds=settings.SERVICE_ACCOUNT_ASSERTION_TTL_SECONDS,
            )
        except (JOSEError, ValueError, TypeError) as e:
            logger.error("Failed to sign service account assertion: %s", e)
            return VerificationFailure(
                Store.PLAY_STORE.value, FailureReason.ASSERTION_SIGNING_FAILED, detail=str(e)
            )

    async def _exchange_assertion(
        self,
        service_account: dict[str, Any],
        assertion: str,
    ) -> Union[str, VerificationFailure]:
        store = Store.PLAY_STORE.value
        token_uri = service_account.get("token_uri") or settings.GOOGLE_TOKEN_URI
        try:
            async with self._http() as client:
                response = await client.post(
                    token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                    timeout=self.timeout,
                )
        except httpx.TimeoutException:
            logger.warning("Token exchange timed out: %s", token_uri)
            return VerificationFailure(store, FailureReason.STORE_TIMEOUT, detail=token_uri)
        except httpx.HTTPError as e:
            logger.warning("Token exchange request failed: %s", e)
            return VerificationFailure(store, FailureReason.STORE_REQUEST_FAILED, detail=str(e))

        if response.status_code != 200:
            logger.error("Token exchange refused: HTTP %s", response.status_code)
            return VerificationFailure(
                store,
                FailureReason.TOKEN_EXCHANGE_FAILED,
                detail=f"HTTP {response.status_code}",
            )
        try:
            token = response.json().get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            return VerificationFailure(
                store, FailureReason.TOKEN_EXCHANGE_FAILED, detail="No access_token in response"
            )
        return token

    async def _get_subscription_purchase(
        self,
        access_token: str,
        package_name: str,
        product_id: str,
        purchase_token: str,
    ) -> Union[dict[str, Any], VerificationFailure]:
        store = Store.PLAY_STORE.value
        url = (
            f"{settings.PLAY_STORE_API_BASE.rstrip('/')}/applications/{quote(package_name, safe='')}"
            f"/purchases/subscriptions/{quote(product_id, safe='')}"
            f"/tokens/{quote(purchase_token, safe='')}"
        )
        try:
            async with self._http() as client:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {access_token}"},
                    timeout=self.timeout,
                )
        except httpx.TimeoutException:
            logger.warning("Play purchase lookup timed out for %s", product_id)
            return VerificationFailure(store, FailureReason.STORE_TIMEOUT, detail=product_id)
        except httpx.HTTPError as e:
            logger.warning("Play purchase lookup failed: %s", e)
            return VerificationFailure(store, FailureReason.STORE_REQUEST_FAILED, detail=str(e))

        if response.status_code >= 500:
            return VerificationFailure(
                store,
                FailureReason.STORE_REQUEST_FAILED,
                detail=f"HTTP {response.status_code}",
            )
        if response.status_code != 200:
            return VerificationFailure(
                store,
                FailureReason.STORE_REJECTED,
                detail=f"HTTP {response.status_code}",
                extra={"status": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Response is not JSON"
            )
        if not isinstance(data, dict):
            return VerificationFailure(
                store, FailureReason.VERIFICATION_FAILED, detail="Response is not an object"
            )
        return data

    def _normalize_play_purchase(
        self,
        claim: ReceiptClaim,
        package_name: str,
        data: dict[str, Any],
    ) -> Union[PlayStoreVerification, VerificationFailure]:
        purchase_time = (
            from_millis(data.get("startTimeMillis"))
            or from_millis(claim.purchase_date_ms)
        )
        if purchase_time is None:
            return VerificationFailure(
                Store.PLAY_STORE.value,
                FailureReason.VERIFICATION_FAILED,
                detail="Purchase has no startTimeMillis",
            )

        expiry_time, expiry_readable = _expiry(data.get("expiryTimeMillis"))
        if not expiry_readable:
            return VerificationFailure(
                Store.PLAY_STORE.value,
                FailureReason.VERIFICATION_FAILED,
                detail="Unreadable expiryTimeMillis",
            )

        amount_cents = None
        micros = data.get("priceAmountMicros")
        if micros is not None:
            try:
                amount_cents = int(micros) // 10_000
            except (TypeError, ValueError):
                amount_cents = None
        if amount_cents is None:
            amount_cents = _price_to_cents(claim.price)

        order_id = bounded_text(data.get("orderId"), MAX_ID_LENGTH)

        # purchaseType is only present for test (0) and promo (1) purchases
        environment = (
            StoreEnvironment.SANDBOX.value
            if data.get("purchaseType") == 0
            else StoreEnvironment.PRODUCTION.value
        )

        return PlayStoreVerification(
            store=Store.PLAY_STORE.value,
            product_id=claim.product_id,
            entitlement_id=claim.entitlement_id or claim.product_id,
            transaction_id=order_id or claim.transaction_id,
            purchase_time=purchase_time,
            expiry_time=expiry_time,
            environment=environment,
            amount_cents=amount_cents,
            currency=bounded_text(data.get("priceCurrencyCode"), 3) or claim.currency,
            order_id=order_id,
            package_name=package_name,
            auto_renewing=data.get("autoRenewing"),
            payment_state=data.get("paymentState"),
        )
