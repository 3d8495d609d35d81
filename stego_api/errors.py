from typing import Optional

from .models import Diagnostics


class StegoError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StegoError):
    """A required upload part is missing or unusable."""

    status_code = 400


class PayloadTooLarge(StegoError):
    status_code = 413


class EngineFailure(StegoError):
    """The engine exited nonzero, crashed, timed out or produced no output."""

    def __init__(self, message: str, diagnostics: Optional[Diagnostics] = None):
        super().__init__(message)
        self.diagnostics = diagnostics


class FilesystemError(StegoError):
    pass


class NotFound(StegoError):
    status_code = 404
