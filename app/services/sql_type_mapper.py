from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from uuid import UUID

logger = logging.getLogger(__name__)

CATEGORY_INTEGER = "integer"
CATEGORY_BOOLEAN = "boolean"
CATEGORY_TEXT = "text"
CATEGORY_TEMPORAL = "temporal"
CATEGORY_NUMERIC = "numeric"
CATEGORY_BINARY = "binary"
CATEGORY_IDENTIFIER = "identifier"
CATEGORY_VARIANT = "variant"


class _Variant:
    """Sentinel returned for SQL types outside the mapping table."""

    _instance: _Variant | None = None

    def __new__(cls) -> _Variant:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "VARIANT"

    def __bool__(self) -> bool:
        return False


VARIANT = _Variant()

Clock = Callable[[], datetime]

_INTEGER_TYPES = ("bigint", "int", "smallint", "tinyint")
_TEXT_TYPES = ("char", "varchar", "nchar", "nvarchar", "text", "ntext", "sysname", "xml")
_DATETIME_TYPES = ("datetime", "datetime2", "smalldatetime")
_DECIMAL_TYPES = ("decimal", "numeric", "money", "smallmoney")
_FLOAT_TYPES = ("float", "real")
_BINARY_TYPES = ("binary", "varbinary", "image")

CLIENT_TYPES: dict[str, type] = {
    **{name: int for name in _INTEGER_TYPES},
    "bit": bool,
    **{name: str for name in _TEXT_TYPES},
    **{name: datetime for name in _DATETIME_TYPES},
    "date": date,
    "time": time,
    "datetimeoffset": datetime,
    **{name: Decimal for name in _DECIMAL_TYPES},
    **{name: float for name in _FLOAT_TYPES},
    **{name: bytes for name in _BINARY_TYPES},
    "uniqueidentifier": UUID,
}

CLIENT_TYPE_CATEGORIES: dict[type, str] = {
    int: CATEGORY_INTEGER,
    bool: CATEGORY_BOOLEAN,
    str: CATEGORY_TEXT,
    datetime: CATEGORY_TEMPORAL,
    date: CATEGORY_TEMPORAL,
    time: CATEGORY_TEMPORAL,
    timedelta: CATEGORY_TEMPORAL,
    Decimal: CATEGORY_NUMERIC,
    float: CATEGORY_NUMERIC,
    bytes: CATEGORY_BINARY,
    UUID: CATEGORY_IDENTIFIER,
}

PYTHON_TYPE_CATEGORIES: dict[str, str] = {
    "int": CATEGORY_INTEGER,
    "bool": CATEGORY_BOOLEAN,
    "str": CATEGORY_TEXT,
    "datetime": CATEGORY_TEMPORAL,
    "date": CATEGORY_TEMPORAL,
    "time": CATEGORY_TEMPORAL,
    "timedelta": CATEGORY_TEMPORAL,
    "Decimal": CATEGORY_NUMERIC,
    "float": CATEGORY_NUMERIC,
    "bytes": CATEGORY_BINARY,
    "bytearray": CATEGORY_BINARY,
    "memoryview": CATEGORY_BINARY,
    "UUID": CATEGORY_IDENTIFIER,
}


def _normalize(sql_type: str | None) -> str:
    return (sql_type or "").strip().lower()


class SqlTypeMapper:
    """Maps SQL Server scalar type names to Python client types and defaults.

    Every lookup is total: unknown names yield ``VARIANT``. Temporal defaults
    read ``clock`` at call time so tests can pin them.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or datetime.now
        self._defaults: dict[str, Callable[[], object]] = {
            **{name: lambda: 0 for name in _INTEGER_TYPES},
            "bit": lambda: False,
            **{name: lambda: "" for name in _TEXT_TYPES},
            **{name: self._now for name in _DATETIME_TYPES},
            "date": lambda: self._now().date(),
            "time": lambda: time(0, 0),
            "datetimeoffset": lambda: self._now().astimezone(),
            **{name: lambda: Decimal("0") for name in _DECIMAL_TYPES},
            **{name: lambda: 0.0 for name in _FLOAT_TYPES},
            **{name: lambda: b"" for name in _BINARY_TYPES},
            "uniqueidentifier": lambda: UUID(int=0),
        }

    def _now(self) -> datetime:
        return self._clock()

    def is_supported(self, sql_type: str | None) -> bool:
        return _normalize(sql_type) in CLIENT_TYPES

    def client_type(self, sql_type: str | None) -> type | _Variant:
        return CLIENT_TYPES.get(_normalize(sql_type), VARIANT)

    def default_value(self, sql_type: str | None) -> object:
        factory = self._defaults.get(_normalize(sql_type))
        if factory is None:
            logger.warning("default_value: unsupported sql_type=%s", sql_type)
            return VARIANT
        return factory()

    def category(self, sql_type: str | None) -> str:
        client = self.client_type(sql_type)
        if client is VARIANT:
            return CATEGORY_VARIANT
        return CLIENT_TYPE_CATEGORIES[client]

    def python_default_value(self, type_name: str) -> object:
        """Value used when probing an endpoint parameter of the given Python type."""
        defaults: dict[str, Callable[[], object]] = {
            "int": lambda: 0,
            "bool": lambda: False,
            "str": lambda: "",
            "float": lambda: 0.0,
            "Decimal": lambda: Decimal("0"),
            "datetime": self._now,
            "date": lambda: self._now().date(),
            "time": lambda: time(0, 0),
            "timedelta": timedelta,
            "bytes": lambda: b"",
            "bytearray": bytearray,
            "UUID": lambda: UUID(int=0),
        }
        factory = defaults.get(type_name)
        return factory() if factory else None


def python_category(type_name: str | None) -> str:
    return PYTHON_TYPE_CATEGORIES.get((type_name or "").strip(), CATEGORY_VARIANT)


DEFAULT_MAPPER = SqlTypeMapper()


def client_type(sql_type: str | None) -> type | _Variant:
    return DEFAULT_MAPPER.client_type(sql_type)


def default_value(sql_type: str | None) -> object:
    return DEFAULT_MAPPER.default_value(sql_type)
