# FILE: osauth/errors.py
"""
Error taxonomy for the attestation backend.

Three families:

  - AttestationError:
      An instance failed one of the identity checks. Recoverable; the
      login is denied and the caller is told nothing beyond a generic
      denial. Each subclass carries a short, low-cardinality `reason`
      used for logs and metric labels.

  - StorageError / InventoryError:
      A collaborator failed. Surfaced verbatim to the caller, never
      retried here.

  - InvalidRole:
      A role write was rejected by validation.

LoginDenied is what the login path finally raises for any attestation
failure, unknown role or unknown instance.
"""
from __future__ import annotations


class OSAuthError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Attestation failures
# ---------------------------------------------------------------------------


class AttestationError(OSAuthError):
    reason = "attestation_failed"


class DeadlineExceeded(AttestationError):
    reason = "deadline"

    def __init__(self, msg: str = "authentication deadline exceeded") -> None:
        super().__init__(msg)


class AttemptLimitExceeded(AttestationError):
    reason = "limit"

    def __init__(self, msg: str = "too many authentication attempts") -> None:
        super().__init__(msg)


class AddressMismatch(AttestationError):
    reason = "address"

    def __init__(self, msg: str = "address mismatched") -> None:
        super().__init__(msg)


class InstanceNotActive(AttestationError):
    reason = "status"

    def __init__(self, msg: str = "instance is not active") -> None:
        super().__init__(msg)


class MetadataKeyMissing(AttestationError):
    reason = "metadata_key"

    def __init__(self, msg: str = "metadata key not found") -> None:
        super().__init__(msg)


class MetadataMismatch(AttestationError):
    reason = "metadata"

    def __init__(self, msg: str = "metadata role name mismatched") -> None:
        super().__init__(msg)


class TenantMismatch(AttestationError):
    reason = "tenant"

    def __init__(self, msg: str = "tenant ID mismatched") -> None:
        super().__init__(msg)


class UserMismatch(AttestationError):
    reason = "user"

    def __init__(self, msg: str = "user ID mismatched") -> None:
        super().__init__(msg)


# ---------------------------------------------------------------------------
# Collaborator failures
# ---------------------------------------------------------------------------


class StorageError(OSAuthError):
    pass


class StorageUnavailable(StorageError):
    pass


class AttemptConflict(StorageError):
    """Compare-and-swap kept losing against concurrent writers."""


class InventoryError(OSAuthError):
    pass


class InstanceNotFound(InventoryError):
    pass


# ---------------------------------------------------------------------------
# Administrative errors
# ---------------------------------------------------------------------------


class InvalidRole(OSAuthError):
    pass


class InvalidRequest(OSAuthError):
    """A required request field is missing or malformed."""


# ---------------------------------------------------------------------------
# Outcomes reported to callers
# ---------------------------------------------------------------------------


class LoginDenied(OSAuthError):
    """
    Generic login denial. The message never says why; `reason` and the
    chained cause carry the specific failure for logs and metrics.
    """

    def __init__(self, reason: str = "denied") -> None:
        super().__init__("login denied")
        self.reason = reason


class RenewalDenied(OSAuthError):
    pass
