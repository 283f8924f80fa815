"""
Error types for the thermal API
Every error renders as JSON {error, details?, width?, height?}
"""
from typing import Any, Dict, Optional


class ThermalAPIError(Exception):
    """Base error carrying an HTTP status and a JSON body"""

    status_code = 500
    default_message = "Processing failed"

    def __init__(self, error: Optional[str] = None, details: Optional[str] = None, **extra: Any):
        self.error = error or self.default_message
        self.details = details
        self.extra = extra
        super().__init__(self.error if details is None else f"{self.error}: {details}")

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


# ============ CLIENT ERRORS (400) ============

class ClientInputError(ThermalAPIError):
    status_code = 400
    default_message = "Invalid request"


class CoordinatesOutOfBoundsError(ClientInputError):
    default_message = "Coordinates out of bounds."

    def __init__(self, width: int, height: int):
        super().__init__(width=width, height=height)


# ============ SERVER ERRORS (500) ============

class DecoderUnavailableError(ThermalAPIError):
    default_message = "Failed to load the thermal decoder on the server."


class EmptyDecodeError(ThermalAPIError):
    default_message = "No thermal data returned - is this really a radiometric JPEG?"


class NoValidSamplesError(ThermalAPIError):
    default_message = "No valid thermal samples (all pixels are no-data or saturated)."


class UnhandledProcessingError(ThermalAPIError):
    default_message = "Processing failed"
