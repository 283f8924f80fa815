"""
Thermal decoder - radiometric JPEG to raw sample matrix using flirimageextractor
Covers FLIR images and DJI R-JPEG (through the DJI Thermal SDK bundled with flirimageextractor).
"""
import os
import re
import tempfile
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

import numpy as np
from loguru import logger

from errors import DecoderUnavailableError
from thermal import SATURATED, ThermalMatrix

# decoders report Celsius; raw samples are tenths of a degree
RAW_SCALE = 0.1

# exiftool JSON keys, first match wins (DJI names before FLIR names)
METADATA_KEYS = {
    "emissivity": ("Emissivity",),
    "distance": ("ObjectDistance", "SubjectDistance"),
    "humidity": ("RelativeHumidity",),
    "reflection": ("ReflectedTemperature", "Reflection", "ReflectedApparentTemperature"),
}

_NUMBER = re.compile(r"[-+]?\d*\.\d+|[-+]?\d+")


class ThermalDecoder(Protocol):
    def decode(self, content: bytes) -> ThermalMatrix:
        ...


def extract_float(value: Any) -> Optional[float]:
    """Parse exiftool values such as '5.0 m', '70.0 %' or 1.0"""
    if isinstance(value, (int, float)):
        return float(value)
    if value is None:
        return None
    digits = _NUMBER.findall(str(value))
    return float(digits[0]) if digits else None


def measurement_parameters(meta: Mapping[str, Any]) -> Dict[str, Optional[float]]:
    """Pick emissivity / distance / humidity / reflection out of exiftool metadata"""
    params: Dict[str, Optional[float]] = {}
    for name, keys in METADATA_KEYS.items():
        params[name] = next(
            (extract_float(meta[key]) for key in keys if key in meta), None
        )

    # DJI stores emissivity as a percentage
    if params["emissivity"] is not None and params["emissivity"] > 1:
        params["emissivity"] = params["emissivity"] / 100

    return params


def celsius_to_raw(celsius: np.ndarray, scale: float = RAW_SCALE) -> np.ndarray:
    """
    Quantize a Celsius array to uint16 raw units (raw = round(C / scale)).
    Non-finite readings become 0 (no data); out of range values are clipped.
    """
    raw = np.rint(np.asarray(celsius, dtype=np.float64) / scale)
    non_finite = ~np.isfinite(raw)
    raw[non_finite] = 0

    below, above = int(np.count_nonzero(raw < 0)), int(np.count_nonzero(raw > SATURATED))
    if below or above or non_finite.any():
        logger.debug(
            f"Clipped {below} pixels below 0 C and {above} above range to sentinels, "
            f"{int(non_finite.sum())} non-finite readings set to no-data"
        )
    return np.clip(raw, 0, SATURATED).astype(np.uint16)


def _default_thermal_factory():
    from flirimageextractor import Thermal

    return Thermal(dtype=np.float32)


def _default_extractor_factory(exiftool_path: str):
    from flirimageextractor import FlirImageExtractor

    return FlirImageExtractor(exiftool_path=exiftool_path)


class DjiThermalDecoder:
    """
    Decoder backed by flirimageextractor.

    The native SDK is loaded on first use and kept for the life of the
    process. A failed load raises DecoderUnavailableError for that request
    and leaves the decoder unloaded, so the next request tries again.
    """

    def __init__(
        self,
        exiftool_path: str = "exiftool",
        thermal_factory: Optional[Callable[[], Any]] = None,
        extractor_factory: Optional[Callable[[str], Any]] = None,
    ):
        self.exiftool_path = exiftool_path
        self._thermal_factory = thermal_factory or _default_thermal_factory
        self._extractor_factory = extractor_factory or _default_extractor_factory
        self._thermal = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._thermal is not None

    def load(self):
        """Return the SDK handle, loading it once"""
        with self._lock:
            if self._thermal is None:
                try:
                    self._thermal = self._thermal_factory()
                except Exception as e:
                    logger.error(f"Failed to load thermal SDK: {e}")
                    raise DecoderUnavailableError(details=str(e)) from e
                logger.info("Thermal SDK loaded")
            return self._thermal

    def decode(self, content: bytes) -> ThermalMatrix:
        """
        Decode a radiometric JPEG.

        Args:
            content: Raw bytes of the uploaded image

        Returns:
            ThermalMatrix with raw samples in tenths of a degree Celsius
        """
        thermal = self.load()

        temp_fd, temp_path = tempfile.mkstemp(suffix=".jpg")
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(content)

            celsius = thermal.parse(filepath_image=temp_path)
            meta = self._extractor_factory(self.exiftool_path).get_metadata(temp_path)
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

        if celsius is None:
            return ThermalMatrix.from_samples(0, 0, [], measurement_parameters(meta))

        celsius = np.asarray(celsius)
        height, width = celsius.shape
        matrix = ThermalMatrix.from_samples(
            width, height, celsius_to_raw(celsius), measurement_parameters(meta)
        )
        logger.debug(f"Decoded {width}x{height} thermal matrix")
        return matrix
