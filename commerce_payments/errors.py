class PaymentError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"detail": self.detail}


class ValidationError(PaymentError):
    """Malformed checkout input. Never retried automatically."""

    status_code = 400


class CartValidationError(ValidationError):
    def __init__(self, reasons: list[str]):
        super().__init__(f"Cart contains invalid items: {', '.join(reasons)}")
        self.reasons = reasons

    def to_dict(self) -> dict:
        return {"detail": self.detail, "reasons": self.reasons}


class NotFoundError(PaymentError):
    status_code = 404


class ProviderError(PaymentError):
    """The payment processor could not be reached or rejected the call."""

    status_code = 502

    def __init__(self, detail: str, retryable: bool = True):
        super().__init__(detail)
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {"detail": self.detail, "retryable": self.retryable}


class WebhookVerificationError(PaymentError):
    status_code = 400


class ConfigurationError(PaymentError):
    status_code = 500
