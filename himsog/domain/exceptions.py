from enum import Enum


class ErrorKind(str, Enum):
    """Classification returned to callers alongside a failure message."""

    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    SLOT_UNAVAILABLE = "slot_unavailable"
    ALREADY_TERMINAL = "already_terminal"
    CONFIGURATION_MISSING = "configuration_missing"


class SchedulingError(Exception):
    """Base exception for all expected scheduling failures."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class InvalidRequestError(SchedulingError):
    """Raised for malformed or empty input, or an illegal non-terminal transition."""

    kind = ErrorKind.INVALID_REQUEST


class NotFoundError(SchedulingError):
    """Raised when a provider, appointment or availability record is missing."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(SchedulingError):
    """Raised when the acting principal has no rights over the resource."""

    kind = ErrorKind.FORBIDDEN


class SlotUnavailableError(SchedulingError):
    """Raised when the requested time range is not bookable at commit time."""

    kind = ErrorKind.SLOT_UNAVAILABLE

    def __init__(self, message: str, provider_id: str | None = None) -> None:
        self.provider_id = provider_id
        super().__init__(message)


class AlreadyTerminalError(SchedulingError):
    """Raised when a transition is attempted on a terminal appointment."""

    kind = ErrorKind.ALREADY_TERMINAL

    def __init__(self, message: str, appointment_id: str | None = None) -> None:
        self.appointment_id = appointment_id
        super().__init__(message)


class ConfigurationMissingError(SchedulingError):
    """Raised when a provider has no operating hours configured."""

    kind = ErrorKind.CONFIGURATION_MISSING


class StoreUnavailableError(Exception):
    """Raised when the backing store fails unexpectedly.

    Not a ``SchedulingError``: it propagates past the actions layer to the caller.
    """


class AppointmentNumberTakenError(Exception):
    """Raised by a store when an appointment number is already in use.

    The lifecycle draws a fresh number and retries; callers never see it.
    """

    def __init__(self, appointment_number: str) -> None:
        self.appointment_number = appointment_number
        super().__init__(f"Appointment number {appointment_number} is already in use")
