import stripe

from billing_webhook.core.config import Settings

SIGNATURE_HEADER = "stripe-signature"

# Event types the dispatcher has handlers for
CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"

# Payment method types recorded as buy-now-pay-later
BNPL_PAYMENT_METHODS = {"afterpay_clearpay", "klarna"}


def configure_stripe(settings: Settings) -> bool:
    """
    Point the SDK at our account. Webhook verification only needs the
    signing secret, so a missing API key is not fatal.
    """
    if settings.STRIPE_API_KEY:
        stripe.api_key = settings.STRIPE_API_KEY
        return True
    return False
