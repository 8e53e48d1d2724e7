import enum


class ErrorCode(str, enum.Enum):
    INVALID_STATE = "INVALID_STATE"
    FORBIDDEN = "FORBIDDEN"
    OTP_INVALID = "OTP_INVALID"
    NOT_FOUND = "NOT_FOUND"
    SYSTEM = "SYSTEM"


class BookingError(Exception):
    """Domain failure raised by the booking core.

    Carries an ErrorCode rather than an HTTP status so scheduler jobs and other
    non-HTTP callers can handle it; main.py maps codes to responses.
    """

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"BookingError({self.code.value}, {self.message!r})"
