"""
Typed access to loosely-typed source rows.

ERP query results arrive as dicts of strings, numbers, booleans and nulls,
and the same column can come back as "12", 12 or 12.0 depending on the
endpoint. Record wraps such a row and offers total coercions: each as_*
method returns the supplied default instead of raising when the value is
missing or cannot be converted.
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, Mapping, Optional

SAP_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
    "%Y%m%d",
)

_TRUE_STRINGS = {"y", "yes", "1", "true", "t"}


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse the date formats the ERP and warehouse APIs emit, else None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    s = str(value).strip()
    if not s:
        return None
    # Drop fractional seconds and a trailing zone designator
    if s.endswith("Z"):
        s = s[:-1]
    base = s.split(".")[0]
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(base, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def format_sap_datetime(value: datetime) -> str:
    """Format a timestamp the way ERP SQL literals expect it."""
    return value.strftime(SAP_DATETIME_FORMAT)


class Record(Mapping[str, Any]):
    """Read-only typed view over one source row."""

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Record({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def as_str(self, key: str, default: str = "") -> str:
        value = self._data.get(key)
        if value is None:
            return default
        return str(value).strip()

    def as_int(self, key: str, default: int = 0) -> int:
        value = self._data.get(key)
        if value is None or isinstance(value, bool):
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            pass
        try:
            return int(Decimal(str(value).strip()))
        except (InvalidOperation, ValueError):
            return default

    def as_decimal(self, key: str, default: Decimal = Decimal("0")) -> Decimal:
        value = self._data.get(key)
        if value is None or isinstance(value, bool):
            return default
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            return default
        return result if result.is_finite() else default

    def as_float(self, key: str, default: float = 0.0) -> float:
        return float(self.as_decimal(key, Decimal(str(default))))

    def as_bool(self, key: str, default: bool = False) -> bool:
        value = self._data.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float, Decimal)):
            return value != 0
        s = str(value).strip().lower()
        if not s:
            return default
        return s in _TRUE_STRINGS

    def as_datetime(self, key: str, default: Optional[datetime] = None) -> Optional[datetime]:
        parsed = parse_datetime(self._data.get(key))
        return parsed if parsed is not None else default
