"""Metered field vocabulary and producer-side measurement helpers."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterable, Mapping

import orjson

GIGABYTE = 1024 ** 3


class MeteredField(StrEnum):
    DATABASE_OPERATIONS = "database_operations"
    DATABASE_DATA_TRANSFER = "database_data_transfer"
    DATABASE_STORAGE_AND_BACKUP = "database_storage_and_backup"
    COMPUTE_SECONDS = "compute_seconds"
    BANDWIDTH = "bandwidth"
    CLOUD_STORAGE_STORED = "cloud_storage_stored"
    CLOUD_STORAGE_DOWNLOADED = "cloud_storage_downloaded"
    CLOUD_UPLOAD_OPS = "cloud_upload_ops"
    CLOUD_DOWNLOAD_OPS = "cloud_download_ops"
    BASE_SERVICE_COST = "base_service_cost"


# Standing state that survives a period rollover
STOCK_FIELDS = frozenset({
    MeteredField.DATABASE_STORAGE_AND_BACKUP,
    MeteredField.CLOUD_STORAGE_STORED,
})

FLOW_FIELDS = frozenset(f for f in MeteredField if f not in STOCK_FIELDS and f != MeteredField.BASE_SERVICE_COST)

# Fields whose cost is split proportionally to recorded usage
USAGE_FIELDS = STOCK_FIELDS | FLOW_FIELDS

_FIELD_VALUES = {f.value for f in MeteredField}


@dataclass(frozen=True, slots=True)
class UsageDelta:
    field: str
    value: float

    @classmethod
    def coerce(cls, item: "UsageDelta | Mapping[str, Any]") -> "UsageDelta":
        if isinstance(item, UsageDelta):
            return item
        return cls(field=str(item["field"]), value=float(item["value"]))


def is_metered(field: str) -> bool:
    return field in _FIELD_VALUES


def merge_deltas(deltas: Iterable[UsageDelta]) -> dict[MeteredField, float]:
    """Collapse deltas into one total per known field.

    Unknown field names are dropped silently; zero totals are kept so callers
    can still tell which fields were touched.
    """
    totals: dict[MeteredField, float] = {}
    for delta in deltas:
        if not is_metered(delta.field):
            continue
        field = MeteredField(delta.field)
        totals[field] = totals.get(field, 0.0) + delta.value
    return totals


def _default(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    return str(obj)


def object_size(obj: Any) -> float:
    """Size of ``obj`` serialized as compact JSON, in gigabytes.

    Historical rate configuration assumes this serialize-then-measure
    convention, so every size-valued field must be computed with it.
    """
    if obj is None:
        return 0.0
    if isinstance(obj, (bytes, bytearray)):
        return len(obj) / GIGABYTE
    return len(orjson.dumps(obj, default=_default, option=orjson.OPT_NON_STR_KEYS)) / GIGABYTE


def to_negative(value: float) -> float:
    """Negate a size for a deletion; already non-positive values pass through."""
    if value <= 0:
        return value
    return -abs(value)
