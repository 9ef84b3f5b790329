"""
Receipt Validator - normalizes Google Play and App Store purchase receipts
into a single ReceiptValidationResult.
"""
import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from config.settings import settings
from models.subscription import PaymentPlatform, ReceiptValidationResult
from utils.shared_utils import from_millis, utcnow

logger = logging.getLogger(__name__)

APPLE_PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
APPLE_SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

# verifyReceipt status for a sandbox receipt sent to production
APPLE_STATUS_SANDBOX_RECEIPT = 21007

# Period granted when the store does not report an expiry
DEFAULT_PERIOD = timedelta(days=30)

GENERIC_FAILURE = "Failed to validate receipt"


class ReceiptValidator:
    """
    Validates mobile store receipts.

    Never raises for bad receipts or provider failures: every problem comes
    back as is_valid=False with an error message.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        apple_shared_secret: Optional[str] = None,
        apple_sandbox: Optional[bool] = None,
    ):
        """
        Args:
            http_client: client used for App Store calls; a short-lived one is
                opened per call when omitted
            apple_shared_secret: App Store shared secret (defaults to settings)
            apple_sandbox: verify against the sandbox endpoint (defaults to settings)
        """
        self.http_client = http_client
        self.apple_shared_secret = apple_shared_secret or settings.apple_shared_secret
        self.apple_sandbox = settings.apple_sandbox if apple_sandbox is None else apple_sandbox

    async def validate(self, platform: PaymentPlatform, receipt: str) -> ReceiptValidationResult:
        if platform == PaymentPlatform.GOOGLE_PLAY:
            return await self.validate_google_play_receipt(receipt)
        if platform == PaymentPlatform.APPLE_STORE:
            return await self.validate_apple_store_receipt(receipt)
        return ReceiptValidationResult(is_valid=False, error="Unsupported platform")

    async def validate_google_play_receipt(self, receipt: str) -> ReceiptValidationResult:
        """
        Validate a Google Play purchase JSON.

        Only the receipt's shape is checked; it is not verified against the
        Play Developer API.
        """
        try:
            data = json.loads(receipt)
            if not isinstance(data, dict):
                return ReceiptValidationResult(is_valid=False, error="Invalid receipt format")

            if not data.get("purchaseToken") or not data.get("productId"):
                return ReceiptValidationResult(is_valid=False, error="Invalid receipt format")

            now = utcnow()
            return ReceiptValidationResult(
                is_valid=True,
                product_id=data["productId"],
                transaction_id=data.get("orderId"),
                purchase_date=from_millis(data.get("purchaseTime")) or now,
                expires_at=from_millis(data.get("expiryTimeMillis")) or now + DEFAULT_PERIOD,
                receipt_data=data,
            )
        except (ValueError, TypeError, OverflowError, OSError) as e:
            logger.error(f"Google Play receipt validation error: {e}")
            return ReceiptValidationResult(is_valid=False, error=GENERIC_FAILURE)

    async def validate_apple_store_receipt(self, receipt: str) -> ReceiptValidationResult:
        """
        Validate a base64 App Store receipt through verifyReceipt.

        A sandbox receipt sent to production (status 21007) is retried once
        against the sandbox endpoint.
        """
        try:
            url = APPLE_SANDBOX_URL if self.apple_sandbox else APPLE_PRODUCTION_URL
            result = await self._post_verify_receipt(url, receipt)

            status = result.get("status")
            if status == APPLE_STATUS_SANDBOX_RECEIPT and url == APPLE_PRODUCTION_URL:
                logger.info("Sandbox receipt sent to production, retrying against sandbox")
                result = await self._post_verify_receipt(APPLE_SANDBOX_URL, receipt)
                status = result.get("status")

            if status != 0:
                return ReceiptValidationResult(
                    is_valid=False,
                    error=f"Apple validation failed with status: {status}",
                )

            latest = self._latest_transaction(result)
            if not latest:
                return ReceiptValidationResult(is_valid=False, error="No valid transaction found")

            now = utcnow()
            return ReceiptValidationResult(
                is_valid=True,
                product_id=latest.get("product_id"),
                transaction_id=latest.get("transaction_id"),
                original_transaction_id=latest.get("original_transaction_id"),
                purchase_date=from_millis(latest.get("purchase_date_ms")) or now,
                expires_at=from_millis(latest.get("expires_date_ms")) or now + DEFAULT_PERIOD,
                receipt_data=result,
            )
        except (httpx.HTTPError, ValueError, TypeError, AttributeError, OverflowError, OSError) as e:
            logger.error(f"Apple Store receipt validation error: {e}")
            return ReceiptValidationResult(is_valid=False, error=GENERIC_FAILURE)

    async def _post_verify_receipt(self, url: str, receipt: str) -> Dict[str, Any]:
        payload = {
            "receipt-data": receipt,
            "password": self.apple_shared_secret,
            "exclude-old-transactions": True,
        }
        if self.http_client is not None:
            response = await self.http_client.post(url, json=payload, timeout=30)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, json=payload, timeout=30)

        response.raise_for_status()
        return response.json()

    @staticmethod
    def _latest_transaction(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Most recent transaction by expiry, then purchase time."""
        transactions = result.get("latest_receipt_info") or (result.get("receipt") or {}).get("in_app") or []
        if not transactions:
            return None

        def sort_key(entry: Dict[str, Any]):
            return (
                int(entry.get("expires_date_ms") or 0),
                int(entry.get("purchase_date_ms") or 0),
            )

        return max(transactions, key=sort_key)


def get_receipt_validator() -> ReceiptValidator:
    """FastAPI dependency returning a validator built from settings."""
    return ReceiptValidator()
