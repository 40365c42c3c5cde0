"""Error taxonomy for the hardware signer core.

Precondition failures are raised synchronously from the Connection Manager,
Account Derivation Service and Signing Orchestrator. Failures that happen
mid-operation never raise to the submitter; they end up as a terminal
``SigningRequest`` status plus an event on the notifier.

Every error carries a stable ``code`` (used in request results, events and
HTTP responses) and a ``retryable`` hint for callers. The core itself never
retries.
"""

from __future__ import annotations


class HardwareSignerError(Exception):
    """Base class for all errors raised by the core."""

    code = "internal_error"
    retryable = False

    def __init__(self, detail: str = "", *, device_id: str | None = None) -> None:
        self.detail = detail or self.__class__.__name__
        self.device_id = device_id
        super().__init__(self.detail)


# -- Transport / device-reported ------------------------------------

class TransportError(HardwareSignerError):
    """The transport adapter failed to talk to the device."""

    code = "transport_error"
    retryable = True


class DeviceLocked(HardwareSignerError):
    """The device requires a PIN/passcode before it can be used."""

    code = "device_locked"
    retryable = True


class UserRejected(HardwareSignerError):
    """The user declined the operation on the device screen."""

    code = "user_rejected"


class SigningTimeout(HardwareSignerError):
    """The device did not answer within the per-request budget."""

    code = "timeout"
    retryable = True


class DeviceDisconnected(HardwareSignerError):
    """The device session ended while work was queued or in flight."""

    code = "device_disconnected"


# -- Preconditions ----------------------------------------------------

class DeviceNotReady(HardwareSignerError):
    """The device is not ``connected`` and ``unlocked``, or the account is stale."""

    code = "device_not_ready"


class UnknownDevice(HardwareSignerError):
    code = "unknown_device"


class UnknownRequest(HardwareSignerError):
    code = "unknown_request"


class InvalidPathRange(HardwareSignerError):
    code = "invalid_path_range"


# -- Concurrency guards ----------------------------------------------

class AlreadyConnecting(HardwareSignerError):
    """A connect attempt for the same device is already in flight."""

    code = "already_connecting"
    retryable = True


class AlreadyDispatched(HardwareSignerError):
    """The request has already been handed to the device."""

    code = "already_dispatched"


class RequestNotPending(HardwareSignerError):
    """The request reached a terminal state before dispatch."""

    code = "request_not_pending"


class ScanInProgress(HardwareSignerError):
    code = "scan_in_progress"
    retryable = True
