"""Live arrival prediction types."""
from datetime import timedelta
from enum import Enum
from typing import NamedTuple


class LoadLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    UNKNOWN = "Unknown"

    @classmethod
    def from_code(cls, code: object) -> "LoadLevel":
        # SEA: seats available, SDA: standing available, LSD: limited standing
        return _LOAD_CODES.get(str(code or "").strip().upper(), cls.UNKNOWN)


_LOAD_CODES = {
    "SEA": LoadLevel.LOW,
    "SDA": LoadLevel.MEDIUM,
    "LSD": LoadLevel.HIGH,
}


class Prediction(NamedTuple):
    service_id: str
    eta_primary: timedelta | None
    eta_secondary: timedelta | None
    load_primary: LoadLevel
    load_secondary: LoadLevel
    monitored: bool
