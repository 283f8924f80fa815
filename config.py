"""
Runtime configuration read from environment variables
"""
import math
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from models import DEFAULT_SCALE, MAX_RAW_SAMPLE, StatsMethod


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    default_scale: float = DEFAULT_SCALE
    preview_limit: int = 50
    stats_method: StatsMethod = StatsMethod.PLAIN
    trim_lower: float = 0.05
    trim_upper: float = 0.99
    exiftool_path: str = "exiftool"
    cors_origins: Tuple[str, ...] = ("*",)

    def __post_init__(self):
        object.__setattr__(self, "stats_method", StatsMethod(self.stats_method))
        if (
            not math.isfinite(self.default_scale)
            or self.default_scale <= 0
            or not math.isfinite(MAX_RAW_SAMPLE * self.default_scale)
        ):
            raise ValueError(f"DEFAULT_SCALE must be a positive number, got {self.default_scale}")
        if self.preview_limit < 0:
            raise ValueError(f"PREVIEW_LIMIT must be >= 0, got {self.preview_limit}")
        if not 0.0 <= self.trim_lower <= self.trim_upper <= 1.0:
            raise ValueError(
                f"Trim quantiles must satisfy 0 <= TRIM_LOWER <= TRIM_UPPER <= 1, "
                f"got {self.trim_lower}/{self.trim_upper}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment; unset variables keep their defaults"""
        env = os.environ if environ is None else environ
        origins = env.get("CORS_ORIGINS", "*")
        return cls(
            host=env.get("HOST", cls.host),
            port=int(env.get("PORT", cls.port)),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
            default_scale=float(env.get("DEFAULT_SCALE", cls.default_scale)),
            preview_limit=int(env.get("PREVIEW_LIMIT", cls.preview_limit)),
            stats_method=StatsMethod(env.get("STATS_METHOD", cls.stats_method.value).lower()),
            trim_lower=float(env.get("TRIM_LOWER", cls.trim_lower)),
            trim_upper=float(env.get("TRIM_UPPER", cls.trim_upper)),
            exiftool_path=env.get("EXIFTOOL_PATH", cls.exiftool_path),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )
