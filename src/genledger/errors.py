"""
Error Taxonomy

Every error raised across the engine derives from GenLedgerError and carries
the HTTP status and machine code the API layer renders.
"""

from typing import Any, Dict, Optional


class GenLedgerError(Exception):
    """Base class for engine errors."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(GenLedgerError):
    """Raised when caller input is malformed or out of range."""
    status_code = 400
    code = "validation_error"


class NotFound(GenLedgerError):
    """Raised when an entity is missing or not owned by the caller."""
    status_code = 404
    code = "not_found"


class InsufficientFunds(GenLedgerError):
    """
    Raised when a balance cannot cover a charge.

    `stage` tells a pre-flight rejection apart from a shortfall discovered
    when the realized cost is charged at completion.
    """
    status_code = 402
    code = "insufficient_funds"

    def __init__(
        self,
        message: str,
        required: Any = None,
        available: Any = None,
        stage: str = "charge",
    ):
        super().__init__(message, required=required, available=available, stage=stage)
        self.required = required
        self.available = available
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["stage"] = self.stage
        if self.required is not None:
            data["required"] = str(self.required)
        if self.available is not None:
            data["available"] = str(self.available)
        return data


class AlreadyFinalized(GenLedgerError):
    """Raised on a second complete/fail of a terminal generation."""
    status_code = 409
    code = "already_finalized"


class UpstreamError(GenLedgerError):
    """Raised when the generation provider fails terminally."""
    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, status: Optional[int] = None, **context: Any):
        super().__init__(message, status=status, **context)
        self.status = status


class UpstreamQuotaExceeded(UpstreamError):
    """Raised on provider rate-limit or quota signals."""
    status_code = 429
    code = "upstream_quota_exceeded"


class UnsupportedResult(UpstreamError):
    """Raised when a finished job only offers a remote-storage reference."""
    code = "unsupported_result"


class Timeout(GenLedgerError):
    """Raised when a long-running job exceeds its polling budget."""
    status_code = 504
    code = "timeout"


class Cancelled(GenLedgerError):
    """Raised when the caller abandoned a long-running job."""
    status_code = 499
    code = "cancelled"


class IngestionError(GenLedgerError):
    """Raised when an output payload cannot be materialized."""
    code = "ingestion_error"


class EmptyPayload(IngestionError):
    """Raised when an output payload decodes to zero bytes."""
    status_code = 400
    code = "empty_payload"


class StorageUploadError(IngestionError):
    """Raised when durable storage rejects an upload."""
    status_code = 502
    code = "storage_upload_error"


class PaymentProviderError(GenLedgerError):
    """Raised when the payment provider cannot open or report a session."""
    status_code = 502
    code = "payment_provider_error"
