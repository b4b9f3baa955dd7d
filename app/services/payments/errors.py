"""Typed failures raised by the payment reconciliation services."""


class PaymentError(Exception):
    """Base exception for payment and order reconciliation errors."""

    pass


class SignatureInvalid(PaymentError):
    """Signature verification failed.

    Callers only ever see this one type. ``reason`` is kept for logs and is
    never returned to the remote party.
    """

    def __init__(self, reason: str = "invalid"):
        super().__init__("Signature verification failed")
        self.reason = reason


class TransitionRejected(PaymentError):
    """Ledger refused a transition.

    ``reason`` is ``illegal_transition``, ``amount_mismatch`` or ``stale_version``.
    """

    def __init__(self, reason: str, from_status: str | None = None, to_status: str | None = None):
        detail = reason
        if from_status or to_status:
            detail = f"{reason}: {from_status} -> {to_status}"
        super().__init__(detail)
        self.reason = reason
        self.from_status = from_status
        self.to_status = to_status


class ProviderUnavailable(PaymentError):
    """Provider could not be reached; safe to retry later."""

    retryable = True

    def __init__(self, provider: str, message: str = "Payment provider unavailable"):
        super().__init__(message)
        self.provider = provider


class ProviderTimeout(ProviderUnavailable):
    """Provider call exhausted its attempts or time budget."""

    def __init__(self, provider: str, message: str = "Payment provider timed out"):
        super().__init__(provider, message)


class ProviderError(PaymentError):
    """Provider answered and rejected the request."""

    retryable = False

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class OrderNotFound(PaymentError):
    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderNotCancelable(PaymentError):
    def __init__(self, order_id, status: str):
        super().__init__(f"Order {order_id} cannot be canceled in status {status}")
        self.order_id = order_id
        self.status = status


class UnknownProvider(PaymentError):
    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider: {provider}")
        self.provider = provider


class InvalidPayload(PaymentError):
    """Authenticated webhook body that is not the JSON the provider documents."""

    def __init__(self, provider: str, message: str = "Malformed webhook payload"):
        super().__init__(message)
        self.provider = provider


class WebhookDeferred(PaymentError):
    """Webhook could not be applied now; the provider should redeliver it."""

    retryable = True

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Webhook from {provider} deferred: {reason}")
        self.provider = provider
        self.reason = reason


class SubscriptionNotFound(PaymentError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription {subscription_id} not found")
        self.subscription_id = subscription_id
