"""
Platform Adapters
=================

HTTP clients for the Google Play Developer API and the App Store Server
API, behind a common ``PlatformAdapter`` contract.

Credentials are opaque bearer tokens supplied by configuration; minting
and rotating them happens elsewhere.

Failures map onto the error taxonomy:
- timeouts -> ``PlatformTimeoutError`` (retryable)
- connection errors -> ``NetworkError`` (retryable)
- 401/403 -> ``AuthorizationError`` (not retryable)
- any other non-2xx -> ``PlatformServiceError`` (retryable)
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel

from app.config import Settings
from app.core.errors import (
    AuthorizationError,
    NetworkError,
    PlatformServiceError,
    PlatformTimeoutError,
)
from app.models.event import Platform
from app.services.verifier import SignatureVerificationError, SignatureVerifier

logger = logging.getLogger(__name__)


# =============================================================================
# Adapter contract
# =============================================================================

class SubscriptionSnapshot(BaseModel):
    """Platform view of a subscription at verification time."""

    purchase_token: str
    product_ref: str
    expiry_at: Optional[datetime] = None
    start_at: Optional[datetime] = None
    auto_renew: bool = True
    owner_ref: Optional[str] = None
    transaction_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class VerificationResult(BaseModel):
    valid: bool
    snapshot: Optional[SubscriptionSnapshot] = None


class RefundResult(BaseModel):
    success: bool
    platform_refund_ref: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


class PlatformAdapter(Protocol):
    platform: Platform

    async def verify_subscription(self, product_ref: str, token: str) -> VerificationResult: ...

    async def acknowledge_payment(self, product_ref: str, token: str) -> bool: ...

    async def process_refund(
        self, transaction_ref: str, amount: Decimal, currency: str
    ) -> RefundResult: ...

    async def fetch_settlement(self, start: date, end: date) -> list[dict[str, Any]]:
        """Raw settlement rows for ``[start, end]``."""
        ...


# =============================================================================
# HTTP base
# =============================================================================

def _parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class HttpPlatformAdapter:
    """Shared request handling and error mapping."""

    platform: Platform

    def __init__(
        self,
        base_url: str,
        access_token: str,
        settlement_url: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.settlement_url = settlement_url
        self.timeout = timeout
        self._client = client

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, headers=self._get_headers(), timeout=self.timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self._get_headers(), **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("%s API timeout: %s %s", self.platform.value, method, url)
            raise PlatformTimeoutError(f"{self.platform.value} request timed out") from exc
        except httpx.TransportError as exc:
            logger.error("%s API unreachable: %s", self.platform.value, exc)
            raise NetworkError(f"{self.platform.value} unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthorizationError(
                f"{self.platform.value} rejected credentials ({response.status_code})"
            )
        if response.status_code >= 400:
            logger.error(
                "%s API returned status %d: %s",
                self.platform.value,
                response.status_code,
                response.text[:200],
            )
            raise PlatformServiceError(
                f"{self.platform.value} returned {response.status_code}",
                upstream_status=response.status_code,
            )
        return response

    async def fetch_settlement(self, start: date, end: date) -> list[dict[str, Any]]:
        if not self.settlement_url:
            raise PlatformServiceError(f"{self.platform.value} settlement export not configured")

        response = await self._request(
            "GET",
            self.settlement_url,
            params={"start": start.isoformat(), "end": end.isoformat()},
        )
        body = response.json()
        rows = body.get("rows", []) if isinstance(body, dict) else body
        if not isinstance(rows, list):
            raise PlatformServiceError(f"{self.platform.value} settlement export is not a list")
        return rows


# =============================================================================
# Google Play
# =============================================================================

class GooglePlayAdapter(HttpPlatformAdapter):
    """Google Play Developer API (androidpublisher v3)."""

    platform = Platform.GOOGLE_PLAY

    def __init__(self, package_name: str, **kwargs):
        super().__init__(**kwargs)
        self.package_name = package_name

    def _app_url(self) -> str:
        return f"{self.base_url}/applications/{self.package_name}"

    async def verify_subscription(self, product_ref: str, token: str) -> VerificationResult:
        try:
            response = await self._request(
                "GET", f"{self._app_url()}/purchases/subscriptionsv2/tokens/{token}"
            )
        except PlatformServiceError as exc:
            # 404/410: token unknown to Google, not a transient failure
            if exc.extra.get("upstream_status") in (404, 410):
                return VerificationResult(valid=False)
            raise

        data = response.json()
        line_items = data.get("lineItems") or [{}]
        item = next(
            (li for li in line_items if li.get("productId") == product_ref),
            line_items[0],
        )
        plan = item.get("autoRenewingPlan") or {}
        price = plan.get("recurringPrice") or {}
        amount = None
        if price.get("units") is not None:
            amount = Decimal(price.get("units", "0")) + Decimal(price.get("nanos", 0)) / Decimal(10**9)

        state = data.get("subscriptionState", "")
        snapshot = SubscriptionSnapshot(
            purchase_token=token,
            product_ref=item.get("productId") or product_ref,
            expiry_at=_parse_rfc3339(item.get("expiryTime")),
            start_at=_parse_rfc3339(data.get("startTime")),
            auto_renew=bool(plan.get("autoRenewEnabled", False)),
            owner_ref=(data.get("externalAccountIdentifiers") or {}).get("obfuscatedExternalAccountId"),
            transaction_ref=data.get("latestOrderId"),
            amount=amount,
            currency=price.get("currencyCode"),
        )
        valid = state not in ("SUBSCRIPTION_STATE_UNSPECIFIED", "SUBSCRIPTION_STATE_PENDING")
        return VerificationResult(valid=valid, snapshot=snapshot)

    async def acknowledge_payment(self, product_ref: str, token: str) -> bool:
        await self._request(
            "POST",
            f"{self._app_url()}/purchases/subscriptions/{product_ref}/tokens/{token}:acknowledge",
            json={},
        )
        return True

    async def process_refund(
        self, transaction_ref: str, amount: Decimal, currency: str
    ) -> RefundResult:
        try:
            await self._request(
                "POST",
                f"{self._app_url()}/orders/{transaction_ref}:refund",
                params={"revoke": "true"},
            )
        except AuthorizationError as exc:
            return RefundResult(success=False, error_message=exc.message, retryable=False)
        except PlatformServiceError as exc:
            return RefundResult(success=False, error_message=exc.message, retryable=True)
        # Google does not issue a separate refund id; the order id identifies it
        return RefundResult(success=True, platform_refund_ref=transaction_ref)


# =============================================================================
# App Store
# =============================================================================

class AppStoreAdapter(HttpPlatformAdapter):
    """App Store Server API."""

    platform = Platform.APP_STORE

    def __init__(self, verifier: SignatureVerifier, **kwargs):
        super().__init__(**kwargs)
        self.verifier = verifier

    async def verify_subscription(self, product_ref: str, token: str) -> VerificationResult:
        try:
            response = await self._request("GET", f"{self.base_url}/inApps/v1/subscriptions/{token}")
        except PlatformServiceError as exc:
            if exc.extra.get("upstream_status") == 404:
                return VerificationResult(valid=False)
            raise

        latest: Optional[dict[str, Any]] = None
        status_code: Optional[int] = None
        for group in response.json().get("data", []):
            for item in group.get("lastTransactions", []):
                if item.get("originalTransactionId") != token:
                    continue
                try:
                    claims = self.verifier.verify(item.get("signedTransactionInfo", ""))
                except SignatureVerificationError as exc:
                    logger.warning("Unverifiable App Store transaction for %s: %s", token, exc)
                    return VerificationResult(valid=False)
                if claims.get("productId") == product_ref or latest is None:
                    latest = claims
                    status_code = item.get("status")

        if latest is None:
            return VerificationResult(valid=False)

        price = latest.get("price")
        snapshot = SubscriptionSnapshot(
            purchase_token=token,
            product_ref=latest.get("productId", product_ref),
            expiry_at=_from_millis(latest.get("expiresDate")),
            start_at=_from_millis(latest.get("originalPurchaseDate") or latest.get("purchaseDate")),
            owner_ref=latest.get("appAccountToken"),
            transaction_ref=latest.get("transactionId"),
            amount=Decimal(price) / Decimal(1000) if price is not None else None,
            currency=latest.get("currency"),
        )
        # status 5 = revoked
        return VerificationResult(valid=status_code != 5, snapshot=snapshot)

    async def acknowledge_payment(self, product_ref: str, token: str) -> bool:
        # App Store purchases need no server-side acknowledgement
        return True

    async def process_refund(
        self, transaction_ref: str, amount: Decimal, currency: str
    ) -> RefundResult:
        return RefundResult(
            success=False,
            error_message="App Store refunds are issued by Apple on customer request",
            retryable=False,
        )


def build_platform_adapters(
    settings: Settings,
    verifier: SignatureVerifier,
) -> dict[Platform, PlatformAdapter]:
    """Adapters for every supported platform, configured from settings."""
    timeout = settings.PLATFORM_HTTP_TIMEOUT_SECONDS
    return {
        Platform.GOOGLE_PLAY: GooglePlayAdapter(
            package_name=settings.GOOGLE_PLAY_PACKAGE_NAME,
            base_url=settings.GOOGLE_PLAY_API_URL,
            access_token=settings.GOOGLE_PLAY_ACCESS_TOKEN,
            settlement_url=settings.GOOGLE_PLAY_SETTLEMENT_URL,
            timeout=timeout,
        ),
        Platform.APP_STORE: AppStoreAdapter(
            verifier=verifier,
            base_url=settings.APP_STORE_API_URL,
            access_token=settings.APP_STORE_ACCESS_TOKEN,
            settlement_url=settings.APP_STORE_SETTLEMENT_URL,
            timeout=timeout,
        ),
    }
