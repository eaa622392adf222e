"""
LabRange - Error types

The base classes line up with the generic classification used by API error
handlers: ValueError -> 400, LookupError -> 404, PermissionError -> 403.
"""

from typing import Any, Dict, Optional


class LabRangeError(Exception):
    """Base class for orchestration errors."""

    code = "LABRANGE_ERROR"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(LabRangeError, ValueError):
    """Malformed input or unknown reference. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError, LookupError):
    """Unknown lab, session, template or flag."""

    code = "NOT_FOUND"


class SessionExpiredError(NotFoundError):
    """Operation attempted outside the session lifetime."""

    code = "SESSION_EXPIRED"


class OwnershipError(LabRangeError, PermissionError):
    """Caller does not own the session."""

    code = "PERMISSION_DENIED"


class ConflictError(LabRangeError):
    """Existing active session for the user, or a duplicate instance."""

    code = "CONFLICT"


class CapacityError(LabRangeError):
    """Concurrency cap reached or a port range is exhausted."""

    code = "CAPACITY_EXHAUSTED"
    retryable = True


class LimitError(LabRangeError):
    """Per-session limit reached (e.g. extensions)."""

    code = "LIMIT_REACHED"


class InvalidTransitionError(LabRangeError):
    """Illegal session status transition."""

    code = "INVALID_TRANSITION"


class ProvisioningError(LabRangeError):
    """Hypervisor create/start failure. Fatal to the session."""

    code = "PROVISIONING_FAILED"


class VMTimeoutError(ProvisioningError):
    """VM never reached the running state or never became reachable."""

    code = "VM_TIMEOUT"


class HypervisorError(LabRangeError):
    """A hypervisor tool invocation failed."""

    code = "HYPERVISOR_ERROR"

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message, command=command, returncode=returncode)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class InjectionError(LabRangeError):
    """Flag delivery could not reach the guest. Logged, never fatal."""

    code = "INJECTION_FAILED"
    retryable = True


class RetryExhaustedError(LabRangeError):
    """A bounded retry gave up."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message, attempts=attempts)
        self.attempts = attempts
        self.last_error = last_error
