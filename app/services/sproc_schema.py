from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from app.services.contract_errors import CatalogConnectionError, ProcedureNotFoundError
from app.services.safe_sql import describe_error, strip_identifier_delimiters, summarize_sql

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"
DIRECTION_INPUT = "input"
DIRECTION_OUTPUT = "output"

# Parameters are left-joined so a procedure without parameters still yields a row.
CATALOG_QUERY = """
SELECT
    p.name AS parameter_name,
    t.name AS type_name,
    p.is_output AS is_output,
    p.max_length AS max_length,
    p.precision AS numeric_precision,
    p.scale AS numeric_scale,
    p.parameter_id AS ordinal_position,
    p.is_nullable AS is_nullable,
    p.default_value AS default_value
FROM sys.procedures AS sp
INNER JOIN sys.schemas AS s ON sp.schema_id = s.schema_id
LEFT JOIN sys.parameters AS p ON sp.object_id = p.object_id
LEFT JOIN sys.types AS t ON p.user_type_id = t.user_type_id
WHERE s.name = :schema_name AND sp.name = :procedure_name
ORDER BY p.parameter_id
"""

CONNECTION_FAILURES = (sa_exc.OperationalError, sa_exc.InterfaceError, OSError)


@dataclass(frozen=True)
class ProcedureName:
    schema: str
    name: str

    @classmethod
    def parse(cls, raw: str, default_schema: str = DEFAULT_SCHEMA) -> ProcedureName:
        """Parse ``[schema].[name]`` or ``schema.name``; no separator means the default schema."""
        value = raw.strip()
        if "." not in value:
            return cls(schema=default_schema, name=strip_identifier_delimiters(value))
        schema, name = value.split(".", 1)
        return cls(
            schema=strip_identifier_delimiters(schema),
            name=strip_identifier_delimiters(name),
        )

    @property
    def full_name(self) -> str:
        return f"[{self.schema}].[{self.name}]"

    @property
    def unescaped_full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def __str__(self) -> str:
        return self.unescaped_full_name


@dataclass(frozen=True)
class ProcedureParameter:
    name: str
    sql_type: str
    direction: str = DIRECTION_INPUT
    is_nullable: bool = False
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    default_value: object | None = None
    ordinal: int = 0

    @property
    def is_output(self) -> bool:
        return self.direction == DIRECTION_OUTPUT


@dataclass(frozen=True)
class ProcedureContract:
    name: ProcedureName
    parameters: tuple[ProcedureParameter, ...] = field(default_factory=tuple)

    @property
    def input_parameters(self) -> tuple[ProcedureParameter, ...]:
        return tuple(param for param in self.parameters if not param.is_output)

    def to_dict(self) -> dict[str, object]:
        return {
            "schema": self.name.schema,
            "name": self.name.name,
            "full_name": self.name.full_name,
            "parameters": [
                {
                    "name": param.name,
                    "sql_type": param.sql_type,
                    "direction": param.direction,
                    "is_nullable": param.is_nullable,
                    "max_length": param.max_length,
                    "precision": param.precision,
                    "scale": param.scale,
                    "default_value": param.default_value,
                    "ordinal": param.ordinal,
                }
                for param in self.parameters
            ],
        }


async def fetch_contract(engine: AsyncEngine, schema: str, name: str) -> ProcedureContract:
    procedure = ProcedureName(schema=schema, name=name)
    summary = summarize_sql(CATALOG_QUERY)
    logger.info(
        "fetch_contract: procedure=%s sql_len=%s sql_hash=%s",
        procedure.unescaped_full_name,
        summary["len"],
        summary["sha256_8"],
    )

    try:
        async with engine.connect() as conn:
            result = await conn.execute(
                text(CATALOG_QUERY),
                {"schema_name": schema, "procedure_name": name},
            )
            rows = result.mappings().all()
    except CONNECTION_FAILURES as exc:
        raise CatalogConnectionError(
            procedure.unescaped_full_name,
            f"Catalog query failed for {procedure.unescaped_full_name}: {describe_error(exc)}",
        ) from exc

    if not rows:
        raise ProcedureNotFoundError(
            procedure.unescaped_full_name,
            f"Procedure {procedure.full_name} was not found in the catalog.",
        )

    parameters = [_parameter_from_row(row) for row in rows if row["parameter_name"] is not None]
    parameters.sort(key=lambda param: param.ordinal)
    logger.info(
        "fetch_contract: procedure=%s parameter_count=%s",
        procedure.unescaped_full_name,
        len(parameters),
    )
    return ProcedureContract(name=procedure, parameters=tuple(parameters))


async def fetch_contract_by_name(
    engine: AsyncEngine,
    raw_name: str,
    default_schema: str = DEFAULT_SCHEMA,
) -> ProcedureContract:
    procedure = ProcedureName.parse(raw_name, default_schema=default_schema)
    return await fetch_contract(engine, procedure.schema, procedure.name)


def _parameter_from_row(row: Mapping[str, object]) -> ProcedureParameter:
    return ProcedureParameter(
        name=str(row["parameter_name"]),
        sql_type=str(row["type_name"] or ""),
        direction=DIRECTION_OUTPUT if row["is_output"] else DIRECTION_INPUT,
        is_nullable=bool(row["is_nullable"]),
        max_length=_optional_int(row["max_length"]),
        precision=_optional_int(row["numeric_precision"]),
        scale=_optional_int(row["numeric_scale"]),
        default_value=row["default_value"],
        ordinal=int(row["ordinal_position"]),
    )


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)
