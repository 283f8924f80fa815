"""
Thermal matrix processing
- single pixel lookup
- aggregate statistics over valid samples
- full matrix encoding (uint16 / float32, binary or base64)
"""
import base64
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import numpy as np
from loguru import logger

from errors import CoordinatesOutOfBoundsError, NoValidSamplesError
from models import MatrixFormat, RawEncoding, StatsMethod

NO_DATA = 0
SATURATED = 65535
NO_DATA_REASON = "no-data-or-saturated"
TEMPERATURE_UNIT = "C"
BYTE_ORDER = "little"

_DTYPES = {
    MatrixFormat.UINT16: np.dtype("<u2"),
    MatrixFormat.FLOAT32: np.dtype("<f4"),
}


@dataclass(frozen=True)
class ThermalMatrix:
    """Decoded image: row-major raw samples, index = y * width + x"""

    width: int
    height: int
    samples: np.ndarray
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_samples(
        cls,
        width: int,
        height: int,
        samples: Iterable[int],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> "ThermalMatrix":
        data = np.array(samples, dtype=np.uint16).reshape(-1)
        data.flags.writeable = False

        if data.size != width * height:
            logger.warning(
                f"Sample count {data.size} does not match {width}x{height} = {width * height}"
            )

        return cls(int(width), int(height), data, dict(parameters or {}))

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def index_of(self, x: int, y: int) -> int:
        return y * self.width + x

    def location_of(self, idx: int) -> Optional[Dict[str, int]]:
        """(x, y) of a flat index, or None when it lies outside width x height"""
        if self.width <= 0 or not 0 <= idx < self.width * self.height:
            return None
        return {"x": idx % self.width, "y": idx // self.width}


def is_sentinel(raw: int) -> bool:
    return raw == NO_DATA or raw == SATURATED


def valid_mask(samples: np.ndarray) -> np.ndarray:
    """Boolean mask of samples that carry a real reading"""
    return (samples != NO_DATA) & (samples != SATURATED)


# ============ MODE 1: SINGLE PIXEL ============

def lookup_pixel(
    matrix: ThermalMatrix,
    x: int,
    y: int,
    scale: float,
    emissivity: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Read one pixel and convert it to degrees Celsius.

    Args:
        matrix: Decoded thermal matrix
        x, y: Pixel coordinates, 0 <= x < width, 0 <= y < height
        scale: Raw-to-Celsius multiplier
        emissivity: Resolved emissivity (override or decoder-reported)

    Returns:
        JSON-ready dict; temperature is None for no-data/saturated pixels

    Raises:
        CoordinatesOutOfBoundsError: if (x, y) lies outside the matrix
    """
    if not matrix.contains(x, y):
        raise CoordinatesOutOfBoundsError(matrix.width, matrix.height)

    idx = matrix.index_of(x, y)
    # short decode: pixels past the end of the buffer have no data
    raw = int(matrix.samples[idx]) if idx < matrix.samples.size else NO_DATA

    if is_sentinel(raw):
        return {
            "temperature": None,
            "reason": NO_DATA_REASON,
            "x": x,
            "y": y,
            "width": matrix.width,
            "height": matrix.height,
            "scale": scale,
        }

    return {
        "temperature": raw * scale,
        "raw": raw,
        "x": x,
        "y": y,
        "width": matrix.width,
        "height": matrix.height,
        "scale": scale,
        "emissivity": emissivity,
        "parameters": matrix.parameters,
    }


# ============ MODE 2: STATISTICS ============

def _nearest_rank(sorted_values: np.ndarray, q: float) -> int:
    return int(sorted_values[int(math.floor(q * (sorted_values.size - 1)))])


def _extreme(matrix: ThermalMatrix, raw: int) -> Dict[str, Any]:
    """First row-major occurrence of a raw value; x/y are None past the matrix bounds"""
    location = matrix.location_of(int(np.argmax(matrix.samples == raw)))
    return {"raw": raw, **(location or {"x": None, "y": None})}


def compute_stats(
    matrix: ThermalMatrix,
    scale: float,
    method: StatsMethod = StatsMethod.PLAIN,
    preview_limit: int = 50,
    trim_lower: float = 0.05,
    trim_upper: float = 0.99,
) -> Dict[str, Any]:
    """
    Aggregate statistics over all non-sentinel samples.

    plain:   min / max / mean of every valid temperature
    trimmed: minC and maxC are nearest-rank quantiles (trim_lower, trim_upper)
             of the sorted temperatures, avgC is the mean of values in
             [minC, maxC]

    Returns:
        {"stats": {...}, "sampleTempsC": [...]}

    Raises:
        NoValidSamplesError: if every sample is a sentinel
    """
    samples = matrix.samples
    mask = valid_mask(samples)
    valid = samples[mask]

    if valid.size == 0:
        raise NoValidSamplesError()

    # work in raw units and scale once; scale > 0 keeps the ordering
    min_raw = int(valid.min())
    max_raw = int(valid.max())

    if method == StatsMethod.TRIMMED:
        ordered = np.sort(valid)
        low = _nearest_rank(ordered, trim_lower)
        high = _nearest_rank(ordered, trim_upper)
        kept = ordered[(ordered >= low) & (ordered <= high)]
        min_c = low * scale
        max_c = high * scale
        avg_c = float(kept.mean()) * scale
    else:
        min_c = min_raw * scale
        max_c = max_raw * scale
        avg_c = float(valid.mean()) * scale

    # summation error must not push the mean outside [min, max]
    avg_c = min(max(avg_c, min_c), max_c)

    stats = {
        "minC": min_c,
        "maxC": max_c,
        "avgC": avg_c,
        "samples": int(valid.size),
        "method": StatsMethod(method).value,
        "minLocation": _extreme(matrix, min_raw),
        "maxLocation": _extreme(matrix, max_raw),
    }

    return {
        "stats": stats,
        "sampleTempsC": (valid[:preview_limit].astype(np.float64) * scale).tolist(),
    }


# ============ FULL MATRIX ENCODING ============

def to_celsius(matrix: ThermalMatrix, scale: float) -> np.ndarray:
    """Every sample (sentinels included) converted to Celsius, row-major"""
    return matrix.samples.astype(np.float64) * scale


def encode_matrix(matrix: ThermalMatrix, scale: float, fmt: MatrixFormat = MatrixFormat.UINT16) -> bytes:
    """
    Pack the full matrix as little-endian binary.

    uint16 keeps raw units (client multiplies by scale),
    float32 carries degrees Celsius directly.
    """
    fmt = MatrixFormat(fmt)
    if fmt == MatrixFormat.FLOAT32:
        return to_celsius(matrix, scale).astype(_DTYPES[fmt]).tobytes()
    return matrix.samples.astype(_DTYPES[fmt]).tobytes()


def decode_matrix(payload: bytes, fmt: MatrixFormat, scale: float) -> np.ndarray:
    """Inverse of encode_matrix: Celsius values as float64"""
    fmt = MatrixFormat(fmt)
    values = np.frombuffer(payload, dtype=_DTYPES[fmt]).astype(np.float64)
    if fmt == MatrixFormat.UINT16:
        return values * scale
    return values


def matrix_payload(
    matrix: ThermalMatrix,
    scale: float,
    fmt: MatrixFormat = MatrixFormat.UINT16,
    encoding: RawEncoding = RawEncoding.BASE64,
) -> Dict[str, Any]:
    """Full matrix fields for a JSON response"""
    if RawEncoding(encoding) == RawEncoding.ARRAY:
        return {"temperaturesC": to_celsius(matrix, scale).tolist()}

    return {
        "temperatures_base64": base64.b64encode(encode_matrix(matrix, scale, fmt)).decode("ascii"),
        "temperatures_format": MatrixFormat(fmt).value,
        "temperatures_scale": scale,
        "temperatures_unit": TEMPERATURE_UNIT,
        "temperatures_byte_order": BYTE_ORDER,
    }


def binary_headers(matrix: ThermalMatrix, scale: float, fmt: MatrixFormat = MatrixFormat.UINT16) -> Dict[str, str]:
    """Side-channel metadata for an octet-stream matrix"""
    return {
        "X-Width": str(matrix.width),
        "X-Height": str(matrix.height),
        "X-Scale": str(scale),
        "X-Format": MatrixFormat(fmt).value,
        "X-Unit": TEMPERATURE_UNIT,
        "X-Byte-Order": BYTE_ORDER,
    }
