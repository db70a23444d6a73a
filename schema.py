"""Table definitions for the ride-hailing data model.

The ten tables are declared as SQLAlchemy ``Table`` metadata (types, NOT NULL,
UNIQUE, foreign keys, VARCHAR/DECIMAL limits). Primary keys, unique columns and
references are derived from that metadata, and each table gets a pydantic
model built from its columns that checks caller input. Rows travel through
the store as plain dicts keyed by column name; ``encode_row``/``decode_row``
give the JSON rendition used by the journal and the HTTP views.
"""

import base64
from collections import namedtuple
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Optional

from pydantic import (
    BeforeValidator,
    ConfigDict,
    TypeAdapter,
    ValidationError,
    condecimal,
    constr,
    create_model,
)
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
)

from errors import DomainRuleViolation, UnknownTable

RIDE_STATUSES = (
    "Requested",
    "Driver_Assigned",
    "In_Progress",
    "Completed",
    "Canceled",
    "Payment_Pending",
)
INCIDENT_STATUSES = ("Reported", "Investigating", "Resolved")

metadata = MetaData()


def _id():
    return Column("id", Integer, primary_key=True, autoincrement=False)


Table(
    "Drivers", metadata,
    _id(),
    # Names stay optional so a driver can be registered with a rating only
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("profile_photo", LargeBinary),
    Column("rating", Numeric(3, 2)),
)

Table(
    "Licenses", metadata,
    _id(),
    Column("license_number", String(255), nullable=False),
    Column("issue_date", Date, nullable=False),
    Column("expiry_date", Date, nullable=False),
    Column("issuing_authority", String(255), nullable=False),
    Column("driver_id", Integer, ForeignKey("Drivers.id"), nullable=False),
    UniqueConstraint("license_number"),
)

Table(
    "Passengers", metadata,
    _id(),
    Column("first_name", String(50), nullable=False),
    Column("last_name", String(50), nullable=False),
    Column("phone", String(25), nullable=False),
    Column("profile_photo", LargeBinary),
    UniqueConstraint("phone"),
)

Table(
    "Vehicles", metadata,
    _id(),
    Column("license_plate", String(50), nullable=False),
    Column("brand", String(50), nullable=False),
    Column("model", String(50), nullable=False),
    Column("color", String(50), nullable=False),
    Column("type", String(50), nullable=False),
    Column("driver_id", Integer, ForeignKey("Drivers.id"), nullable=False),
    UniqueConstraint("license_plate"),
)

Table(
    "Rides", metadata,
    _id(),
    Column("pickup_location", String(255), nullable=False),
    Column("dropoff_location", String(255), nullable=False),
    Column("start_time", DateTime, nullable=False),
    Column("end_time", DateTime, nullable=False),
    Column("status", String(30), nullable=False, default="Requested"),
    Column("driver_id", Integer, ForeignKey("Drivers.id"), nullable=False),
)

Table(
    "Ride_Passengers", metadata,
    Column("ride_id", Integer, ForeignKey("Rides.id"), primary_key=True, autoincrement=False),
    Column("passenger_id", Integer, ForeignKey("Passengers.id"), primary_key=True, autoincrement=False),
)

Table(
    "Reviews", metadata,
    _id(),
    Column("ride_id", Integer, ForeignKey("Rides.id"), nullable=False),
    Column("passenger_id", Integer, ForeignKey("Passengers.id"), nullable=False),
    Column("rating", Integer, nullable=False),
    Column("comment", String(255)),
)

Table(
    "Incidents", metadata,
    _id(),
    Column("incident_type", String(50), nullable=False),
    Column("reported_by", String(50), nullable=False),
    Column("status", String(25), nullable=False, default="Reported"),
    Column("ride_id", Integer, ForeignKey("Rides.id"), nullable=False),
    Column("driver_id", Integer, ForeignKey("Drivers.id"), nullable=False),
    Column("passenger_id", Integer, ForeignKey("Passengers.id"), nullable=False),
)

Table(
    "Payments", metadata,
    _id(),
    Column("ride_id", Integer, ForeignKey("Rides.id"), nullable=False),
    Column("amount", Numeric(10, 2), nullable=False),
    # Date and method are filled in at settlement; a payment may be recorded first
    Column("transaction_date", DateTime),
    Column("payment_method", String(25)),
    Column("status", String(25), nullable=False, default="Pending"),
    UniqueConstraint("ride_id"),
)

Table(
    "Earnings", metadata,
    _id(),
    Column("payment_id", Integer, ForeignKey("Payments.id"), nullable=False),
    Column("commission_amount", Numeric(10, 2), nullable=False),
    Column("driver_earnings", Numeric(10, 2), nullable=False),
    # Optional like the payment date it mirrors
    Column("transaction_date", DateTime),
)

# Children removed together with their parent on a cascading delete
OWNED_REFERENCES = frozenset({
    ("Ride_Passengers", "ride_id"),
    ("Reviews", "ride_id"),
    ("Incidents", "ride_id"),
    ("Payments", "ride_id"),
    ("Earnings", "payment_id"),
})

Reference = namedtuple("Reference", ["column", "references", "owned"])


# ---------------- ROW MODELS ----------------
def _reject_bool(value):
    if isinstance(value, bool):
        raise ValueError("expected a number, not a boolean")
    return value


def _decimal_input(scale):
    """Accept floats through their ``str`` and drop trailing zeros past ``scale``."""
    step = Decimal(1).scaleb(-scale)

    def convert(value):
        _reject_bool(value)
        if isinstance(value, float):
            value = Decimal(str(value))
        elif isinstance(value, (int, str)):
            try:
                value = Decimal(value)
            except InvalidOperation:
                return value
        if isinstance(value, Decimal) and value.is_finite():
            try:
                quantized = value.quantize(step)
            except InvalidOperation:
                return value
            if quantized == value:
                return quantized
        return value

    return convert


def _annotation(column):
    python_type = column.type.python_type
    if python_type is int:
        return Annotated[int, BeforeValidator(_reject_bool)]
    if python_type is str:
        return constr(max_length=column.type.length)
    if python_type is Decimal:
        precision, scale = column.type.precision, column.type.scale
        limit = Decimal(10) ** (precision - scale)
        return Annotated[
            condecimal(decimal_places=scale, gt=-limit, lt=limit),
            BeforeValidator(_decimal_input(scale)),
        ]
    return python_type


def _row_model(table):
    fields = {}
    for column in table.columns:
        annotation = _annotation(column)
        if column.nullable:
            fields[column.name] = (Optional[annotation], None)
        elif column.default is not None:
            fields[column.name] = (annotation, column.default.arg)
        else:
            fields[column.name] = (annotation, ...)
    return create_model(f"{table.name}Row", __config__=ConfigDict(extra="forbid"), **fields)


class TableDef:
    """Key, unique and reference layout of one table plus its row model."""

    def __init__(self, table):
        self.sql = table
        self.name = table.name
        self.primary_key = tuple(c.name for c in table.primary_key.columns)
        self.unique = tuple(sorted(
            c.name
            for constraint in table.constraints
            if isinstance(constraint, UniqueConstraint)
            for c in constraint.columns
        ))
        self.foreign_keys = tuple(
            Reference(column.name, fk.column.table.name, (table.name, column.name) in OWNED_REFERENCES)
            for column in table.columns
            for fk in column.foreign_keys
        )
        self.binary_columns = tuple(
            c.name for c in table.columns if isinstance(c.type, LargeBinary)
        )
        self.model = _row_model(table)
        self.key_adapters = {
            name: TypeAdapter(_annotation(table.columns[name])) for name in self.primary_key
        }

    @property
    def column_names(self):
        return tuple(c.name for c in self.sql.columns)

    @property
    def composite_key(self):
        return len(self.primary_key) > 1

    def foreign_key(self, column):
        for fk in self.foreign_keys:
            if fk.column == column:
                return fk
        return None

    def __repr__(self):
        return f"<TableDef {self.name}>"


TABLES = {name: TableDef(table) for name, table in metadata.tables.items()}


def get_table(name):
    try:
        return TABLES[name]
    except KeyError:
        raise UnknownTable(name) from None


def dependents(name):
    """Return (child table, reference) pairs that point at ``name``."""
    get_table(name)
    return [
        (child, fk)
        for child in TABLES.values()
        for fk in child.foreign_keys
        if fk.references == name
    ]


def row_key(table, row):
    if table.composite_key:
        return tuple(row[c] for c in table.primary_key)
    return row[table.primary_key[0]]


# ---------------- VALIDATION ----------------
ERROR_RULES = {
    "extra_forbidden": "unknown_column",
    "missing": "not_null",
    "string_too_long": "max_length",
    "decimal_max_places": "numeric_scale",
    "decimal_max_digits": "numeric_precision",
    "decimal_whole_digits": "numeric_precision",
    "less_than": "numeric_precision",
    "greater_than": "numeric_precision",
}


def _violation(table_name, error, field=None):
    """Turn the first pydantic error into a DomainRuleViolation."""
    detail = error.errors()[0]
    if detail["loc"]:
        field = str(detail["loc"][0])
    rule = ERROR_RULES.get(detail["type"], "column_type")
    value = None if detail["type"] == "missing" else detail.get("input")
    if rule == "column_type" and value is None:
        rule = "not_null"
    return DomainRuleViolation(rule, detail["msg"], table=table_name, field=field, value=value)


def coerce_row(table, values):
    """Validate a full row and return it as a new typed dict.

    Omitted nullable columns become None and columns with a default get it.
    """
    try:
        row = table.model.model_validate(values)
    except ValidationError as e:
        raise _violation(table.name, e) from None
    return row.model_dump()


def normalize_key(table, key):
    """Coerce a caller-supplied key into the shape stored in the table."""
    if table.composite_key:
        if isinstance(key, str):
            key = key.split(",")
        if not isinstance(key, (tuple, list)) or len(key) != len(table.primary_key):
            raise DomainRuleViolation(
                "primary_key_shape",
                f"expected {len(table.primary_key)} key parts",
                table=table.name,
                value=key,
            )
        return tuple(
            _validate_key_part(table, column, part) for column, part in zip(table.primary_key, key)
        )
    return _validate_key_part(table, table.primary_key[0], key)


def _validate_key_part(table, column, value):
    try:
        return table.key_adapters[column].validate_python(value)
    except ValidationError as e:
        raise _violation(table.name, e, field=column) from None


# ---------------- JSON CODEC ----------------
def encode_value(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def encode_row(row):
    return {name: encode_value(value) for name, value in row.items()}


def decode_row(table, data):
    values = dict(data)
    for name in table.binary_columns:
        if isinstance(values.get(name), str):
            values[name] = base64.b64decode(values[name])
    return coerce_row(table, values)


def encode_key(key):
    return list(key) if isinstance(key, tuple) else key


def decode_key(table, data):
    return tuple(data) if table.composite_key else data
