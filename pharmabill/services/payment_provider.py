"""
Payment provider integration.

Non-instant payments (card, UPI, wallet...) can be registered with an
online provider; the provider later confirms or fails them through the
webhook. Without a configured provider those payments stay INITIATED
until confirmed through the API.

Webhook bodies are signed with HMAC-SHA256 over the raw body.
"""
import hashlib
import hmac
import logging
from typing import Optional, Protocol

from pharmabill.config import settings
from pharmabill.models.billing import Invoice, Payment


logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """Raised when the provider rejects or cannot be reached for a payment."""
    pass


class PaymentProvider(Protocol):
    async def register_payment(self, payment: Payment, invoice: Invoice) -> Optional[str]:
        """Register a pending payment; return the provider's reference, if any."""
        ...


class RazorpayPaymentProvider:
    """
    Registers pending payments as Razorpay orders.
    The Razorpay order id becomes the payment's provider reference.
    """

    def __init__(self, key_id: str, key_secret: str):
        import razorpay

        self.client = razorpay.Client(auth=(key_id, key_secret))
        self.key_id = key_id

    async def register_payment(self, payment: Payment, invoice: Invoice) -> Optional[str]:
        order_data = {
            "amount": payment.amount_paise,
            "currency": "INR",
            "receipt": str(payment.id),
            "notes": {
                "invoice_number": invoice.invoice_number,
                "method": payment.method,
            },
        }
        try:
            razorpay_order = self.client.order.create(data=order_data)
        except Exception as e:
            logger.error(f"Failed to create Razorpay order for payment {payment.id}: {e}")
            raise PaymentProviderError(str(e)) from e

        logger.info(f"Created Razorpay order {razorpay_order['id']} for payment {payment.id}")
        return razorpay_order["id"]


def get_payment_provider() -> Optional[PaymentProvider]:
    """Provider configured in settings, or None for offline-only operation."""
    if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
        return RazorpayPaymentProvider(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
    return None


def sign_webhook_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    """
    Verify a provider webhook signature.

    Args:
        body: Raw request body bytes
        signature: Signature header value

    Returns:
        True if signature is valid, False otherwise
    """
    webhook_secret = settings.PAYMENT_WEBHOOK_SECRET

    if not webhook_secret:
        logger.warning("Webhook secret not configured")
        return False
    if not signature:
        logger.warning("Webhook request without signature")
        return False

    # Constant-time comparison
    is_valid = hmac.compare_digest(sign_webhook_body(body, webhook_secret), signature)
    if not is_valid:
        logger.warning("Invalid webhook signature")
    return is_valid
