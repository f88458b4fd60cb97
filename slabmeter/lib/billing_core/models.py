import math
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, Tuple, Dict, Any

ACTIVE = "active"
CLOSED = "closed"

DEFAULT_CONSUMPTION_TARGET = 500.0


def new_id() -> str:
    return uuid.uuid4().hex


def parse_datetime(value) -> Optional[datetime]:
    """
    Accepts a datetime or an ISO8601 string (e.g. 2025-11-01T00:00:00Z).
    Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class Meter:
    meter_id: str
    name: str
    meter_type: str = "General"
    is_general_purpose: bool = False
    is_currently_active_general: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meter":
        return cls(
            meter_id=data["meter_id"],
            name=data["name"],
            meter_type=data.get("meter_type", "General"),
            is_general_purpose=bool(data.get("is_general_purpose", False)),
            is_currently_active_general=bool(data.get("is_currently_active_general", False)),
        )


@dataclass
class Reading:
    meter_id: str
    cycle_id: str
    timestamp: datetime
    value: float
    units_consumed_since_previous: float = 0.0
    notes: str = ""
    is_estimated: bool = False
    reading_id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = format_datetime(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reading":
        return cls(
            reading_id=data["reading_id"],
            meter_id=data["meter_id"],
            cycle_id=data["cycle_id"],
            timestamp=parse_datetime(data["timestamp"]),
            value=float(data["value"]),
            units_consumed_since_previous=float(data.get("units_consumed_since_previous", 0)),
            notes=data.get("notes") or "",
            is_estimated=bool(data.get("is_estimated", False)),
        )


@dataclass
class BillingCycle:
    start_date: datetime
    status: str = ACTIVE
    end_date: Optional[datetime] = None
    government_collection_date: Optional[datetime] = None
    notes: str = ""
    cycle_id: str = field(default_factory=new_id)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "start_date": format_datetime(self.start_date),
            "end_date": format_datetime(self.end_date),
            "status": self.status,
            "government_collection_date": format_datetime(self.government_collection_date),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingCycle":
        return cls(
            cycle_id=data["cycle_id"],
            start_date=parse_datetime(data["start_date"]),
            end_date=parse_datetime(data.get("end_date")),
            status=data.get("status", ACTIVE),
            government_collection_date=parse_datetime(data.get("government_collection_date")),
            notes=data.get("notes") or "",
        )


@dataclass(frozen=True)
class Tier:
    from_unit: float
    to_unit: Optional[float]  # None = open-ended
    rate: float

    @property
    def upper(self) -> float:
        return math.inf if self.to_unit is None else self.to_unit

    @property
    def range_label(self) -> str:
        if self.to_unit is None:
            return f"{_fmt_units(self.from_unit)}+"
        return f"{_fmt_units(self.from_unit)}-{_fmt_units(self.to_unit)}"

    def to_dict(self) -> Dict[str, Any]:
        return {"from_unit": self.from_unit, "to_unit": self.to_unit, "rate": self.rate}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tier":
        to_unit = data.get("to_unit")
        if to_unit is not None and math.isinf(float(to_unit)):
            to_unit = None
        return cls(
            from_unit=float(data["from_unit"]),
            to_unit=float(to_unit) if to_unit is not None else None,
            rate=float(data["rate"]),
        )


def _fmt_units(units: float) -> str:
    return str(int(units)) if float(units).is_integer() else str(units)


@dataclass
class SlabRateConfig:
    config_name: str
    effective_date: datetime
    slabs_up_to_500: Tuple[Tier, ...] = ()
    slabs_above_500: Tuple[Tier, ...] = ()
    is_currently_active: bool = False
    config_id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "config_name": self.config_name,
            "effective_date": format_datetime(self.effective_date),
            "is_currently_active": self.is_currently_active,
            "slabs_up_to_500": [t.to_dict() for t in self.slabs_up_to_500],
            "slabs_above_500": [t.to_dict() for t in self.slabs_above_500],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlabRateConfig":
        return cls(
            config_id=data.get("config_id") or new_id(),
            config_name=data["config_name"],
            effective_date=parse_datetime(data.get("effective_date")) or datetime.now(timezone.utc),
            is_currently_active=bool(data.get("is_currently_active", False)),
            slabs_up_to_500=tuple(Tier.from_dict(t) for t in data.get("slabs_up_to_500", [])),
            slabs_above_500=tuple(Tier.from_dict(t) for t in data.get("slabs_above_500", [])),
        )


@dataclass
class Settings:
    consumption_target: float = DEFAULT_CONSUMPTION_TARGET
