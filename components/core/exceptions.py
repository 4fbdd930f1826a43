"""Exception hierarchy for the koperasi service."""


class KoperasiError(Exception):
    """Base exception for all service errors."""


class ValidationError(KoperasiError):
    """Raised when input is rejected at the call boundary."""


class InvalidStateError(ValidationError):
    """Raised when an entity is in the wrong status for the operation."""


class NotFoundError(KoperasiError):
    """Raised when a referenced entity does not exist."""


class RateLimitError(KoperasiError):
    """Raised when a channel's send window for a contract is exhausted."""


class DuplicateNotificationError(KoperasiError):
    """Raised when a notification was already created today for the same installment and template."""


class TemplateRenderError(KoperasiError):
    """Raised when a template references a placeholder with no value."""


class DeliveryError(KoperasiError):
    """Raised by a channel provider when a message could not be delivered."""


class DisbursementError(KoperasiError):
    """Raised when disbursement failed and was rolled back."""
