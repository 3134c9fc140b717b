"""Custom exceptions for TrueNAS Block."""

from typing import List, Optional


class TrueNASBlockException(Exception):
    """Base exception for TrueNAS Block errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


# Remote API errors


class TrueNASAPIError(TrueNASBlockException):
    """API returned an error response."""

    def __init__(
        self,
        message: str,
        status_code: int = None,
        response_data: dict = None,
        method: str = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data
        self.method = method


class TrueNASTransientError(TrueNASAPIError):
    """Transient failure that may succeed when retried."""

    def __init__(self, message: str, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class TrueNASAPIConnectionError(TrueNASTransientError):
    """Failed to connect to the TrueNAS API."""

    pass


class TrueNASAPITimeout(TrueNASTransientError):
    """API request timed out."""

    pass


class TrueNASAuthError(TrueNASAPIError):
    """Authentication against the TrueNAS API failed."""

    pass


class TrueNASResourceNotFound(TrueNASAPIError):
    """Remote resource does not exist."""

    pass


class TrueNASResourceAlreadyExists(TrueNASAPIError):
    """Remote resource already exists."""

    pass


class TrueNASResourceBusy(TrueNASAPIError):
    """Remote resource is in use."""

    pass


class TrueNASJobFailed(TrueNASAPIError):
    """Asynchronous appliance job failed or did not finish in time."""

    def __init__(self, message: str, job_id: int = None, **kwargs):
        super().__init__(message, **kwargs)
        self.job_id = job_id


class TrueNASUnsupportedOperation(TrueNASAPIError):
    """Method is not available over the selected transport."""

    pass


# Validation errors


class ValidationError(TrueNASBlockException):
    """Caller input or environment failed validation. Never retried."""

    pass


class InvalidConfiguration(ValidationError):
    """Configuration is incomplete or malformed."""

    pass


class InvalidVolumeName(ValidationError):
    """Volume identity could not be parsed."""

    pass


class ShrinkNotSupported(ValidationError):
    """Requested size is not larger than the current size."""

    def __init__(self, current: int, requested: int):
        super().__init__(
            f"shrink not supported (current={current} requested={requested})"
        )
        self.current = current
        self.requested = requested


class InsufficientSpace(ValidationError):
    """Not enough free space on the parent dataset."""

    pass


class PreflightValidationError(ValidationError):
    """One or more pre-flight checks failed."""

    def __init__(self, failures: List[str]):
        self.failures = list(failures)
        details = "\n".join(f"  - {f}" for f in self.failures)
        super().__init__(f"Pre-flight validation failed:\n{details}")


class TargetNotFound(ValidationError):
    """Configured iSCSI target or NVMe subsystem does not exist."""

    pass


class ProtectedVolumeError(ValidationError):
    """Operation refused on a protected volume."""

    pass


# Lifecycle errors


class NameAllocationError(TrueNASBlockException):
    """No free volume name could be allocated."""

    pass


class InitiatorError(TrueNASBlockException):
    """Local initiator (iscsiadm/nvme) operation failed."""

    pass


class CommandError(InitiatorError):
    """External command exited with a non-zero status."""

    def __init__(
        self,
        cmd: List[str],
        returncode: int,
        stderr: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        if message is None:
            message = f"Command '{' '.join(self.cmd)}' failed with exit code {returncode}"
            if self.stderr:
                message = f"{message}: {self.stderr}"
        super().__init__(message)


class DeviceNotReady(TrueNASBlockException):
    """Remote volume exists but its local block device did not appear."""

    def __init__(self, message: str, identity: str = None, dataset: str = None):
        super().__init__(message)
        self.identity = identity
        self.dataset = dataset


class VolumeDeleteError(TrueNASBlockException):
    """Volume could not be removed from the appliance."""

    pass
