from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from app.services.contract_errors import (
    AMBIGUOUS_BINDING,
    BINDING_CONFLICT,
    CATEGORY_AMBIGUOUS_BINDING,
    CATEGORY_CONTRACT_MISMATCH,
    CATEGORY_INVOCATION,
    CATEGORY_UNSUPPORTED_TYPE,
    INVOCATION_FAILED,
    PARAMETER_COUNT_MISMATCH,
    PARAMETER_TYPE_MISMATCH,
    PROCEDURE_NOT_FOUND,
    UNSUPPORTED_TYPE,
    ContractError,
    make_finding,
)
from app.services.endpoint_call_graph import Options as CallGraphOptions
from app.services.endpoint_call_graph import build_call_map
from app.services.endpoint_surface import (
    ControllerDescriptor,
    MethodDescriptor,
    ParameterDescriptor,
    describe_parameters,
    endpoint_functions,
    extract_controllers,
    find_collaborator_type,
    is_controller,
)
from app.services.endpoint_surface import Options as SurfaceOptions
from app.services.interface_stubs import instantiate_with_stubs, probe_endpoint
from app.services.safe_sql import describe_error
from app.services.sproc_invoker import invoke_with_defaults
from app.services.sproc_schema import ProcedureContract, fetch_contract_by_name
from app.services.sql_type_mapper import (
    CATEGORY_VARIANT,
    DEFAULT_MAPPER,
    Clock,
    SqlTypeMapper,
    python_category,
)

logger = logging.getLogger(__name__)

KIND_ENDPOINT = "endpoint"
KIND_COLLABORATOR_METHOD = "collaborator_method"
BINDING_CALL_GRAPH = "call_graph"


@dataclass(frozen=True)
class ReportOptions:
    surface: SurfaceOptions = field(default_factory=SurfaceOptions)
    call_graph: CallGraphOptions = field(default_factory=CallGraphOptions)
    invoke: bool = False
    invoke_timeout: float | None = None
    probe: bool = False


@dataclass
class CorrelationResult:
    key: str
    kind: str
    called_methods: list[str] = field(default_factory=list)
    procedure: str | None = None
    binding_source: str | None = None
    contract: ProcedureContract | None = None
    findings: list[dict[str, str]] = field(default_factory=list)
    invocation: dict[str, Any] | None = None

    @property
    def has_mismatch(self) -> bool:
        return any(item["category"] == CATEGORY_CONTRACT_MISMATCH for item in self.findings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind,
            "called_methods": list(self.called_methods),
            "procedure": self.procedure,
            "binding_source": self.binding_source,
            "contract": self.contract.to_dict() if self.contract else None,
            "findings": list(self.findings),
            "invocation": self.invocation,
        }


def bound_procedure_names(controllers: Iterable[ControllerDescriptor]) -> list[str]:
    """Every procedure name bound by an endpoint or collaborator method, first seen first."""
    names: list[str] = []
    for controller in controllers:
        candidates = [endpoint.procedure_name for endpoint in controller.endpoints]
        if controller.collaborator is not None:
            candidates.extend(method.procedure_name for method in controller.collaborator.methods)
        for name in candidates:
            if name and name not in names:
                names.append(name)
    return names


def correlate(
    controllers: Sequence[ControllerDescriptor],
    call_map: Mapping[str, list[str]],
    contracts: Mapping[str, ProcedureContract],
    failures: Mapping[str, dict[str, str]] | None = None,
    mapper: SqlTypeMapper | None = None,
) -> list[CorrelationResult]:
    """Match code-side bindings against catalog contracts.

    Results follow discovery order: each controller's endpoints, then the
    methods of its collaborator (once per collaborator interface).
    """
    failures = failures or {}
    mapper = mapper or DEFAULT_MAPPER
    results: list[CorrelationResult] = []
    seen_collaborators: set[str] = set()

    for controller in controllers:
        collaborator = controller.collaborator
        for endpoint in controller.endpoints:
            called = list(call_map.get(endpoint.key, []))
            reached: list[MethodDescriptor] = []
            if collaborator is not None:
                reached = [
                    method
                    for method in (collaborator.method(name) for name in called)
                    if method is not None
                ]
            inferred: list[str] = []
            for method in reached:
                if method.procedure_name and method.procedure_name not in inferred:
                    inferred.append(method.procedure_name)

            result = CorrelationResult(key=endpoint.key, kind=KIND_ENDPOINT, called_methods=called)
            supplier = endpoint.parameters
            if endpoint.procedure_name:
                result.procedure = endpoint.procedure_name
                result.binding_source = endpoint.binding_source
                if inferred and endpoint.procedure_name not in inferred:
                    result.findings.append(
                        make_finding(
                            BINDING_CONFLICT,
                            CATEGORY_AMBIGUOUS_BINDING,
                            f"{endpoint.key} is bound to {endpoint.procedure_name} but calls "
                            f"collaborator methods bound to {', '.join(inferred)}.",
                            severity="warning",
                        )
                    )
            elif len(inferred) == 1:
                result.procedure = inferred[0]
                result.binding_source = BINDING_CALL_GRAPH
                supplier = next(m for m in reached if m.procedure_name == inferred[0]).parameters
            elif len(inferred) > 1:
                result.findings.append(
                    make_finding(
                        AMBIGUOUS_BINDING,
                        CATEGORY_AMBIGUOUS_BINDING,
                        f"{endpoint.key} reaches several procedures: {', '.join(inferred)}.",
                    )
                )

            if result.procedure:
                result.contract = contracts.get(result.procedure)
                result.findings.extend(
                    _contract_findings(result.procedure, supplier, result.contract, failures, mapper)
                )
            results.append(result)

        if collaborator is None or collaborator.full_name in seen_collaborators:
            continue
        seen_collaborators.add(collaborator.full_name)
        for method in collaborator.methods:
            result = CorrelationResult(
                key=f"{collaborator.name}.{method.name}",
                kind=KIND_COLLABORATOR_METHOD,
                procedure=method.procedure_name,
                binding_source=method.binding_source,
            )
            if method.procedure_name:
                result.contract = contracts.get(method.procedure_name)
                result.findings.extend(
                    _contract_findings(
                        method.procedure_name, method.parameters, result.contract, failures, mapper
                    )
                )
            results.append(result)

    logger.info(
        "correlate: results=%s with_findings=%s",
        len(results),
        sum(1 for result in results if result.findings),
    )
    return results


async def fetch_contracts(
    engine: AsyncEngine,
    names: Iterable[str],
    default_schema: str = "dbo",
) -> tuple[dict[str, ProcedureContract], dict[str, dict[str, str]]]:
    contracts: dict[str, ProcedureContract] = {}
    failures: dict[str, dict[str, str]] = {}
    for name in names:
        try:
            contracts[name] = await fetch_contract_by_name(engine, name, default_schema)
        except ContractError as exc:
            logger.warning("fetch_contracts: procedure=%s error=%s", name, exc.finding_id)
            failures[name] = exc.to_finding()
    return contracts, failures


async def invoke_contracts(
    engine: AsyncEngine,
    contracts: Iterable[ProcedureContract],
    *,
    mapper: SqlTypeMapper | None = None,
    timeout: float | None = None,
) -> dict[str, dict[str, Any]]:
    """Invoke each procedure with default arguments; one failure never stops the rest."""
    outcomes: dict[str, dict[str, Any]] = {}
    for contract in contracts:
        name = contract.name.unescaped_full_name
        try:
            result = await invoke_with_defaults(engine, contract, mapper=mapper, timeout=timeout)
        except ContractError as exc:
            logger.warning("invoke_contracts: procedure=%s error=%s", name, exc.finding_id)
            outcomes[name] = {"succeeded": False, "error": exc.to_finding()}
            continue
        except Exception as exc:  # noqa: BLE001 - invocation failures are reported per procedure
            logger.warning("invoke_contracts: procedure=%s error=%s", name, type(exc).__name__)
            outcomes[name] = {
                "succeeded": False,
                "error": make_finding(
                    INVOCATION_FAILED,
                    CATEGORY_INVOCATION,
                    f"Invocation of {name} failed: {describe_error(exc)}",
                ),
            }
            continue
        outcomes[name] = {
            "succeeded": True,
            "row_count": len(result.rows),
            "rows": result.rows,
            "output_values": result.output_values,
            "arguments": result.arguments,
            "warnings": result.warnings,
        }
    return outcomes


async def probe_endpoints(
    candidates: Sequence[type],
    options: SurfaceOptions | None = None,
    mapper: SqlTypeMapper | None = None,
) -> dict[str, dict[str, str | None]]:
    """Run each endpoint against a stubbed collaborator and record the method it reached."""
    options = options or SurfaceOptions()
    mapper = mapper or DEFAULT_MAPPER
    probes: dict[str, dict[str, str | None]] = {}
    for candidate in candidates:
        if not is_controller(candidate, options):
            continue
        try:
            located = find_collaborator_type(candidate, options)
        except Exception as exc:  # noqa: BLE001 - unresolved annotations skip the probe
            logger.warning(
                "probe_endpoints: controller=%s error=%s", candidate.__name__, type(exc).__name__
            )
            continue
        if located is None:
            continue
        parameter_name, interface = located
        for name, func in endpoint_functions(candidate, options):
            key = f"{candidate.__name__}.{name}"
            try:
                controller = instantiate_with_stubs(candidate, {parameter_name: interface})
                arguments = {
                    param.name: mapper.python_default_value(param.type_name)
                    for param in describe_parameters(func)
                    if not param.has_default
                }
            except Exception as exc:  # noqa: BLE001 - probe setup failures are reported per endpoint
                probes[key] = {"reached": None, "error": describe_error(exc)}
                continue
            outcome = await probe_endpoint(controller, name, arguments)
            probes[key] = {"reached": outcome.reached, "error": outcome.error}
    logger.info(
        "probe_endpoints: endpoints=%s reached=%s",
        len(probes),
        sum(1 for probe in probes.values() if probe["reached"]),
    )
    return probes


async def build_contract_report(
    candidates: Sequence[type],
    engine: AsyncEngine,
    options: ReportOptions | None = None,
    mapper: SqlTypeMapper | None = None,
    clock: Clock | None = None,
) -> dict[str, Any]:
    options = options or ReportOptions()
    generated_at = (clock or _utc_now)()
    controllers = extract_controllers(candidates, options.surface)
    call_map = build_call_map(candidates, options.call_graph, options.surface)
    names = bound_procedure_names(controllers)
    contracts, failures = await fetch_contracts(engine, names, options.surface.default_schema)
    results = correlate(controllers, call_map, contracts, failures, mapper)

    if options.invoke:
        outcomes = await invoke_contracts(
            engine, contracts.values(), mapper=mapper, timeout=options.invoke_timeout
        )
        for result in results:
            outcome = outcomes.get(result.procedure or "")
            if outcome is None:
                continue
            result.invocation = outcome
            if not outcome["succeeded"]:
                result.findings.append(outcome["error"])

    errors = [
        f"{error} ({controller.name})" for controller in controllers for error in controller.errors
    ]
    report: dict[str, Any] = {
        "generated_at": generated_at.isoformat(),
        "summary": {
            "controller_count": len(controllers),
            "endpoint_count": sum(1 for r in results if r.kind == KIND_ENDPOINT),
            "collaborator_method_count": sum(
                1 for r in results if r.kind == KIND_COLLABORATOR_METHOD
            ),
            "procedure_count": len(names),
            "resolved_procedure_count": len(contracts),
            "mismatch_count": sum(1 for r in results if r.has_mismatch),
        },
        "results": [result.to_dict() for result in results],
        "contracts": [contracts[name].to_dict() for name in names if name in contracts],
        "errors": errors,
    }
    if options.probe:
        report["probes"] = await probe_endpoints(candidates, options.surface, mapper)
    return report


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _contract_findings(
    procedure: str,
    supplier: Sequence[ParameterDescriptor],
    contract: ProcedureContract | None,
    failures: Mapping[str, dict[str, str]],
    mapper: SqlTypeMapper,
) -> list[dict[str, str]]:
    if contract is None:
        failure = failures.get(procedure)
        if failure is not None:
            return [dict(failure)]
        return [
            make_finding(
                PROCEDURE_NOT_FOUND,
                CATEGORY_CONTRACT_MISMATCH,
                f"Procedure {procedure} was not found in the catalog.",
            )
        ]

    findings: list[dict[str, str]] = []
    for param in contract.parameters:
        if not mapper.is_supported(param.sql_type):
            logger.warning(
                "correlate: procedure=%s parameter=%s unsupported sql_type=%s",
                procedure,
                param.name,
                param.sql_type,
            )
            findings.append(
                make_finding(
                    UNSUPPORTED_TYPE,
                    CATEGORY_UNSUPPORTED_TYPE,
                    f"Parameter {param.name} of {procedure} has unsupported type {param.sql_type}.",
                    severity="warning",
                )
            )

    inputs = contract.input_parameters
    if len(supplier) != len(inputs):
        findings.append(
            make_finding(
                PARAMETER_COUNT_MISMATCH,
                CATEGORY_CONTRACT_MISMATCH,
                f"{procedure} expects {len(inputs)} input parameter(s); "
                f"code supplies {len(supplier)}.",
            )
        )

    for code_param, sql_param in zip(supplier, inputs):
        code_category = python_category(code_param.type_name)
        sql_category = mapper.category(sql_param.sql_type)
        if CATEGORY_VARIANT in (code_category, sql_category):
            continue
        if code_category != sql_category:
            findings.append(
                make_finding(
                    PARAMETER_TYPE_MISMATCH,
                    CATEGORY_CONTRACT_MISMATCH,
                    f"{code_param.name} ({code_param.type_name}, {code_category}) does not match "
                    f"{sql_param.name} ({sql_param.sql_type}, {sql_category}) of {procedure}.",
                )
            )
    return findings
