from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from app.services.contract_errors import (
    CATEGORY_UNSUPPORTED_TYPE,
    UNSUPPORTED_TYPE,
    CatalogConnectionError,
    InvocationTimeoutError,
    make_finding,
)
from app.services.safe_sql import describe_error, quote_identifier, summarize_sql
from app.services.sproc_schema import CONNECTION_FAILURES, ProcedureContract, ProcedureParameter
from app.services.sql_type_mapper import DEFAULT_MAPPER, VARIANT, SqlTypeMapper

logger = logging.getLogger(__name__)

SOURCE_CATALOG_DEFAULT = "catalog_default"
SOURCE_NULL = "null"
SOURCE_TYPE_DEFAULT = "type_default"
SOURCE_OUTPUT = "output"
SOURCE_UNSUPPORTED = "unsupported"

_LENGTH_TYPES = {"char", "varchar", "binary", "varbinary"}
_UNICODE_LENGTH_TYPES = {"nchar", "nvarchar"}
_PRECISION_TYPES = {"decimal", "numeric"}
_FRACTIONAL_SECONDS_TYPES = {"datetime2", "time", "datetimeoffset"}


@dataclass(frozen=True)
class InvocationArgument:
    parameter: ProcedureParameter
    value: Any
    source: str
    bind_name: str


@dataclass
class InvocationResult:
    procedure: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    output_values: dict[str, Any] = field(default_factory=dict)
    arguments: dict[str, Any] = field(default_factory=dict)
    warnings: list[dict[str, str]] = field(default_factory=list)


def build_arguments(
    contract: ProcedureContract, mapper: SqlTypeMapper | None = None
) -> tuple[list[InvocationArgument], list[dict[str, str]]]:
    """One argument per parameter, in ordinal order.

    Catalog default first, then NULL for nullable parameters, then the type
    default. Output parameters are declared but never given a value.
    """
    mapper = mapper or DEFAULT_MAPPER
    arguments: list[InvocationArgument] = []
    warnings: list[dict[str, str]] = []
    for index, param in enumerate(contract.parameters):
        bind_name = f"p{index}"
        if param.is_output:
            arguments.append(InvocationArgument(param, None, SOURCE_OUTPUT, bind_name))
            continue
        if param.default_value is not None:
            arguments.append(
                InvocationArgument(param, param.default_value, SOURCE_CATALOG_DEFAULT, bind_name)
            )
        elif param.is_nullable:
            arguments.append(InvocationArgument(param, None, SOURCE_NULL, bind_name))
        else:
            value = mapper.default_value(param.sql_type)
            if value is VARIANT:
                warnings.append(
                    make_finding(
                        UNSUPPORTED_TYPE,
                        CATEGORY_UNSUPPORTED_TYPE,
                        f"Parameter {param.name} of {contract.name.full_name} has unsupported "
                        f"type {param.sql_type}; NULL is supplied.",
                        severity="warning",
                    )
                )
                arguments.append(InvocationArgument(param, None, SOURCE_UNSUPPORTED, bind_name))
            else:
                arguments.append(InvocationArgument(param, value, SOURCE_TYPE_DEFAULT, bind_name))
    return arguments, warnings


def sql_type_declaration(param: ProcedureParameter) -> str:
    sql_type = param.sql_type.strip().lower()
    if sql_type in _LENGTH_TYPES or sql_type in _UNICODE_LENGTH_TYPES:
        if param.max_length is None:
            return sql_type
        if param.max_length == -1:
            return f"{sql_type}(max)"
        length = param.max_length // 2 if sql_type in _UNICODE_LENGTH_TYPES else param.max_length
        return f"{sql_type}({max(length, 1)})"
    if sql_type in _PRECISION_TYPES and param.precision is not None:
        return f"{sql_type}({param.precision}, {param.scale or 0})"
    if sql_type in _FRACTIONAL_SECONDS_TYPES and param.scale is not None:
        return f"{sql_type}({param.scale})"
    return sql_type


def build_exec_batch(
    contract: ProcedureContract, arguments: Sequence[InvocationArgument]
) -> tuple[str, dict[str, Any]]:
    declarations: list[str] = []
    assignments: list[str] = []
    captures: list[str] = []
    params: dict[str, Any] = {}

    for argument in arguments:
        param = argument.parameter
        parameter_name = param.name if param.name.startswith("@") else f"@{param.name}"
        if param.is_output:
            variable = f"@__out_{argument.bind_name}"
            declarations.append(f"DECLARE {variable} {sql_type_declaration(param)};")
            assignments.append(f"{parameter_name} = {variable} OUTPUT")
            captures.append(f"{variable} AS {quote_identifier(parameter_name.lstrip('@'))}")
        else:
            assignments.append(f"{parameter_name} = :{argument.bind_name}")
            params[argument.bind_name] = argument.value

    procedure = (
        f"{quote_identifier(contract.name.schema)}.{quote_identifier(contract.name.name)}"
    )
    lines = ["SET NOCOUNT ON;", *declarations]
    if assignments:
        lines.append(f"EXEC {procedure} {', '.join(assignments)};")
    else:
        lines.append(f"EXEC {procedure};")
    if captures:
        lines.append(f"SELECT {', '.join(captures)};")
    return "\n".join(lines), params


async def invoke_with_defaults(
    engine: AsyncEngine,
    contract: ProcedureContract,
    *,
    mapper: SqlTypeMapper | None = None,
    timeout: float | None = None,
) -> InvocationResult:
    arguments, warnings = build_arguments(contract, mapper)
    batch, params = build_exec_batch(contract, arguments)
    procedure = contract.name.unescaped_full_name
    summary = summarize_sql(batch)
    logger.info(
        "invoke_with_defaults: procedure=%s params=%s sql_len=%s sql_hash=%s",
        procedure,
        len(params),
        summary["len"],
        summary["sha256_8"],
    )

    async def _run() -> list[list[dict[str, Any]]]:
        async with engine.connect() as conn:
            return await conn.run_sync(_execute_batch, batch, params)

    # The deadline covers acquiring the connection as well as running the batch.
    try:
        result_sets = await asyncio.wait_for(_run(), timeout)
    except asyncio.TimeoutError as exc:
        raise InvocationTimeoutError(
            procedure, f"Invocation of {procedure} exceeded {timeout}s."
        ) from exc
    except CONNECTION_FAILURES as exc:
        raise CatalogConnectionError(
            procedure, f"Invocation of {procedure} failed: {describe_error(exc)}"
        ) from exc

    outputs = [argument for argument in arguments if argument.parameter.is_output]
    rows = result_sets[0] if result_sets else []
    output_values: dict[str, Any] = {}
    if outputs and result_sets:
        # The capture SELECT is always the last result set of the batch.
        captured = result_sets[-1][0] if result_sets[-1] else {}
        rows = result_sets[0] if len(result_sets) > 1 else []
        for argument in outputs:
            column = argument.parameter.name.lstrip("@")
            output_values[argument.parameter.name] = captured.get(column)

    logger.info("invoke_with_defaults: procedure=%s rows=%s", procedure, len(rows))
    return InvocationResult(
        procedure=procedure,
        rows=rows,
        output_values=output_values,
        arguments={
            argument.parameter.name: argument.value
            for argument in arguments
            if not argument.parameter.is_output
        },
        warnings=warnings,
    )


def _execute_batch(
    connection: Connection, batch: str, params: dict[str, Any]
) -> list[list[dict[str, Any]]]:
    result = connection.execute(text(batch), params)
    if not result.returns_rows:
        return []
    cursor = result.cursor
    result_sets: list[list[dict[str, Any]]] = []
    while True:
        if cursor.description is not None:
            columns = [column[0] for column in cursor.description]
            result_sets.append([dict(zip(columns, row)) for row in cursor.fetchall()])
        if not hasattr(cursor, "nextset") or not cursor.nextset():
            break
    result.close()
    return result_sets
