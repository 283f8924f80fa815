"""
Data models for the Thermal Matrix API
"""
import math
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from errors import ClientInputError

DEFAULT_SCALE = 0.1
# largest raw sample; scale must keep it finite in Celsius
MAX_RAW_SAMPLE = 65535


class MatrixFormat(str, Enum):
    """Element type of an encoded full matrix"""
    UINT16 = "uint16"
    FLOAT32 = "float32"


class StatsMethod(str, Enum):
    """How min/max/avg are derived from the valid samples"""
    PLAIN = "plain"
    TRIMMED = "trimmed"


class Transport(str, Enum):
    JSON = "json"
    BINARY = "binary"


class RawEncoding(str, Enum):
    """How a JSON response embeds the full matrix"""
    BASE64 = "base64"
    ARRAY = "array"


FIELD_ERRORS = {
    "x": "Invalid coordinates",
    "y": "Invalid coordinates",
    "scale": "Invalid 'scale'. Must be a positive number (e.g. 0.1).",
}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class ExtractParams(BaseModel):
    """Validated parameters of POST /extract-thermal"""
    model_config = ConfigDict(frozen=True, extra="ignore")

    x: Optional[int] = None
    y: Optional[int] = None
    scale: float = DEFAULT_SCALE
    emissivity: Optional[float] = Field(None, allow_inf_nan=False)
    include_raw_data: bool = False
    format: MatrixFormat = MatrixFormat.UINT16
    stats: Optional[StatsMethod] = None  # None -> configured default
    transport: Transport = Transport.JSON
    raw_encoding: RawEncoding = RawEncoding.BASE64

    @model_validator(mode="before")
    @classmethod
    def _pair_coordinates(cls, data: Any) -> Any:
        """
        Single-pixel mode needs both coordinates. If either is absent or
        empty, both are dropped and the request runs in stats mode. If both
        are present, each must be a base-10 integer ("abc" or "1.5" is a
        400 "Invalid coordinates", not a fallback to stats mode).
        """
        if isinstance(data, dict) and (_blank(data.get("x")) or _blank(data.get("y"))):
            data = {k: v for k, v in data.items() if k not in ("x", "y")}
        return data

    @field_validator("x", "y", mode="before")
    @classmethod
    def _parse_coordinate(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return int(value.strip(), 10)
            except ValueError:
                raise ValueError(f"{value!r} is not an integer") from None
        return value

    @field_validator("scale")
    @classmethod
    def _check_scale(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("scale must be a finite number greater than zero")
        if not math.isfinite(MAX_RAW_SAMPLE * value):
            raise ValueError(f"scale {value} overflows the Celsius range")
        return value

    @field_validator("include_raw_data", mode="before")
    @classmethod
    def _parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return value

    @field_validator("format", "stats", "transport", "raw_encoding", mode="before")
    @classmethod
    def _normalize_choice(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def has_coordinates(self) -> bool:
        return self.x is not None and self.y is not None

    def resolve_emissivity(self, parameters: Mapping[str, Any]) -> Optional[float]:
        """Request override first, then whatever the decoder reported"""
        if self.emissivity is not None:
            return self.emissivity
        return parameters.get("emissivity")

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any], default_scale: float = DEFAULT_SCALE) -> "ExtractParams":
        """
        Build parameters from merged string fields (form body over query string).

        Empty strings count as absent. Raises ClientInputError on the first
        field that fails validation.
        """
        data = {k: v for k, v in fields.items() if k in cls.model_fields and not _blank(v)}
        data.setdefault("scale", default_scale)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            err = exc.errors()[0]
            field = str(err["loc"][0]) if err["loc"] else "parameters"
            raise ClientInputError(FIELD_ERRORS.get(field, f"Invalid '{field}'"), details=err["msg"]) from None
