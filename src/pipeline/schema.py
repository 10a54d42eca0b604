# ========================
# src/pipeline/schema.py
# ========================

"""
Dataset Schemas

Layer names, dataset names, column typing rules and the Arrow schemas used
when a layer snapshot is written.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import pyarrow as pa

# Layers
RAW_LAYER = "raw"
CLEANED_LAYER = "cleaned"
SUMMARY_LAYER = "summary"
LAYERS = (RAW_LAYER, CLEANED_LAYER, SUMMARY_LAYER)

# Datasets
TRADES = "trades"
CLIENTS = "clients"
TRADE_DETAILS = "trade_details"
CLIENT_INVESTMENTS = "client_investments"

# Decimal layout of monetary columns
AMOUNT_PRECISION = 24
AMOUNT_SCALE = 6
TOTAL_PRECISION = 38
TOTAL_SCALE = 12

AMOUNT_TYPE = pa.decimal128(AMOUNT_PRECISION, AMOUNT_SCALE)
TOTAL_TYPE = pa.decimal128(TOTAL_PRECISION, TOTAL_SCALE)

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d",
    "%d-%b-%Y",
    "%m/%d/%Y",
]

TRADE_SCHEMA = pa.schema([
    ("trade_id", pa.string()),
    ("client_id", pa.string()),
    ("instrument", pa.string()),
    ("quantity", AMOUNT_TYPE),
    ("unit_price", AMOUNT_TYPE),
    ("trade_date", pa.date32()),
])

CLIENT_SCHEMA = pa.schema([
    ("client_id", pa.string()),
    ("client_name", pa.string()),
    ("region", pa.string()),
])

TRADE_DETAIL_SCHEMA = pa.schema(
    list(TRADE_SCHEMA) + [
        ("client_name", pa.string()),
        ("region", pa.string()),
    ]
)

CLIENT_INVESTMENT_SCHEMA = pa.schema([
    ("client_id", pa.string()),
    ("client_name", pa.string()),
    ("region", pa.string()),
    ("total_investment", TOTAL_TYPE),
    ("trade_count", pa.int64()),
])

# Schemas of the datasets that arrive as delimited text
SOURCE_SCHEMAS: Dict[str, pa.Schema] = {
    TRADES: TRADE_SCHEMA,
    CLIENTS: CLIENT_SCHEMA,
}

TRADE_REQUIRED_FIELDS = ("trade_id", "client_id", "instrument", "quantity", "unit_price", "trade_date")
CLIENT_REQUIRED_FIELDS = ("client_id", "client_name", "region")


def column_names(schema: pa.Schema) -> List[str]:
    """Return the column names of a schema in declaration order."""
    return [field.name for field in schema]


def parse_decimal(value: str,
                  precision: int = AMOUNT_PRECISION,
                  scale: int = AMOUNT_SCALE) -> Decimal:
    """
    Parse a decimal string without losing precision.

    Raises:
        ValueError: If the value is not a finite number or does not fit the
            column's precision and scale.
    """
    try:
        number = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")

    if not number.is_finite():
        raise ValueError(f"not a finite number: {value!r}")

    if number.as_tuple().exponent < -scale:
        raise ValueError(f"more than {scale} fractional digits: {value!r}")

    if number != 0 and number.adjusted() >= precision - scale:
        raise ValueError(f"more than {precision - scale} integer digits: {value!r}")

    return number


def parse_date(value: str) -> date:
    """Parse a date string using the accepted input formats."""
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date: {value!r}")


def convert_value(field: pa.Field, raw: Optional[str]) -> Any:
    """
    Convert one delimited-text cell to the Python value for a schema field.

    Empty cells become None. Strings are passed through untouched.

    Args:
        field (pa.Field): Target schema field
        raw (str): Cell text as read from the source

    Returns:
        The typed value, or None for an empty cell.

    Raises:
        ValueError: If a non-empty cell cannot be typed.
    """
    if raw is None or not raw.strip():
        return None

    if pa.types.is_string(field.type):
        return raw
    if pa.types.is_decimal(field.type):
        return parse_decimal(raw.strip(), field.type.precision, field.type.scale)
    if pa.types.is_date(field.type):
        return parse_date(raw.strip())
    if pa.types.is_integer(field.type):
        return int(raw.strip())

    raise ValueError(f"unsupported column type {field.type} for '{field.name}'")


def resolve_header(header: List[str], schema: pa.Schema) -> Tuple[Dict[str, int], List[str]]:
    """
    Map schema columns to their positions in a source header.

    Args:
        header (list): Column names as declared by the source
        schema (pa.Schema): Dataset schema

    Returns:
        tuple: (column -> index mapping, list of missing columns)
    """
    positions = {name.strip(): index for index, name in enumerate(header)}
    mapping = {}
    missing = []
    for name in column_names(schema):
        if name in positions:
            mapping[name] = positions[name]
        else:
            missing.append(name)
    return mapping, missing
