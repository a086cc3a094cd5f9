# [파일 설명]
# - 목적: 저장 프로시저 계약 검증 API 라우트를 정의하고 요청/응답 모델을 제공한다.
# - 제공 기능: 표면 추출, 호출 그래프, 타입 매핑, 카탈로그 조회, 합성 호출, 상관 분석 POST 엔드포인트를 제공한다.
# - 입력/출력: Pydantic 모델로 요청을 수신하고 표준화된 응답 구조를 반환한다.
# - 주의 사항: SQL 원문과 연결 문자열은 로깅/응답에 직접 노출하지 않는다.
# - 연관 모듈: app.services.* 추출/분석/카탈로그 서비스들과 연결된다.
from __future__ import annotations

import base64
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import load_settings
from app.services.contract_correlator import ReportOptions, build_contract_report
from app.services.contract_errors import (
    CatalogConnectionError,
    InvocationTimeoutError,
    ProcedureNotFoundError,
)
from app.services.db import DatabaseNotConfiguredError, get_engine
from app.services.endpoint_call_graph import Options as ServiceCallGraphOptions
from app.services.endpoint_call_graph import build_call_map
from app.services.endpoint_surface import (
    ControllerDescriptor,
    EndpointDescriptor,
    ParameterDescriptor,
    extract_controllers,
    load_types,
)
from app.services.endpoint_surface import Options as ServiceSurfaceOptions
from app.services.sproc_invoker import invoke_with_defaults
from app.services.sproc_schema import ProcedureContract, fetch_contract_by_name
from app.services.sql_type_mapper import DEFAULT_MAPPER, VARIANT

logger = logging.getLogger(__name__)

router = APIRouter()

API_VERSION = "1.0"


# [클래스 설명]
# - 역할: 표면 추출 옵션 Pydantic 스키마 모델을 정의한다.
# - 사용 위치: /surface, /call-graph, /correlate 요청에서 사용된다.
# - 핵심 동작: 비어 있는 필드는 환경 설정 값으로 채운다.
# - 제약/주의: 동작 로직보다 스키마 표현에 집중한다.
class SurfaceOptions(BaseModel):
    controller_base_names: list[str] | None = None
    controller_suffix: str | None = None
    collaborator_token: str | None = None
    procedure_infix: str | None = None
    default_schema: str | None = None


# [클래스 설명]
# - 역할: 호출 그래프 옵션 Pydantic 스키마 모델을 정의한다.
# - 사용 위치: /call-graph, /correlate 요청에서 사용된다.
# - 핵심 동작: 필드 토큰과 역방향 탐색 한도를 받는다.
# - 제약/주의: max_lookback은 1 이상이어야 한다.
class CallGraphOptions(BaseModel):
    field_token: str | None = None
    max_lookback: int | None = Field(default=None, ge=1)


class SurfaceRequest(BaseModel):
    modules: list[str] = Field(..., min_length=1)
    options: SurfaceOptions = Field(default_factory=SurfaceOptions)


class ParameterModel(BaseModel):
    name: str
    type_name: str
    full_type_name: str
    is_optional: bool
    has_default: bool


class EndpointModel(BaseModel):
    key: str
    owner: str
    method_name: str
    http_verb: str
    route: str
    parameters: list[ParameterModel]
    return_type: str
    procedure_name: str | None
    binding_source: str | None


class CollaboratorMethodModel(BaseModel):
    name: str
    parameters: list[ParameterModel]
    return_type: str
    procedure_name: str | None
    binding_source: str | None


class CollaboratorModel(BaseModel):
    name: str
    full_name: str
    parameter_name: str
    methods: list[CollaboratorMethodModel]


class ControllerModel(BaseModel):
    name: str
    full_name: str
    route: str
    endpoints: list[EndpointModel]
    collaborator: CollaboratorModel | None
    errors: list[str]


class SurfaceResponse(BaseModel):
    version: str
    controllers: list[ControllerModel]
    errors: list[str]


class CallGraphRequest(BaseModel):
    modules: list[str] = Field(..., min_length=1)
    options: SurfaceOptions = Field(default_factory=SurfaceOptions)
    call_graph: CallGraphOptions = Field(default_factory=CallGraphOptions)


class CallGraphResponse(BaseModel):
    version: str
    calls: dict[str, list[str]]
    errors: list[str]


class TypeMapRequest(BaseModel):
    sql_types: list[str] = Field(..., min_length=1)


class TypeMapEntry(BaseModel):
    sql_type: str
    supported: bool
    client_type: str | None
    category: str
    default: Any = None


class TypeMapResponse(BaseModel):
    version: str
    entries: list[TypeMapEntry]


class ProcedureRequest(BaseModel):
    name: str = Field(..., min_length=1)
    default_schema: str | None = None


class ProcedureParameterModel(BaseModel):
    name: str
    sql_type: str
    direction: str
    is_nullable: bool
    max_length: int | None
    precision: int | None
    scale: int | None
    default_value: Any = None
    ordinal: int


class ContractModel(BaseModel):
    schema_name: str
    name: str
    full_name: str
    parameters: list[ProcedureParameterModel]


class ProcedureResponse(BaseModel):
    version: str
    contract: ContractModel


class InvokeRequest(BaseModel):
    name: str = Field(..., min_length=1)
    default_schema: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class InvokeResponse(BaseModel):
    version: str
    procedure: str
    row_count: int
    rows: list[dict[str, Any]]
    output_values: dict[str, Any]
    arguments: dict[str, Any]
    warnings: list[dict[str, str]]


class CorrelateRequest(BaseModel):
    modules: list[str] = Field(..., min_length=1)
    options: SurfaceOptions = Field(default_factory=SurfaceOptions)
    call_graph: CallGraphOptions = Field(default_factory=CallGraphOptions)
    invoke: bool = False
    probe: bool = False


class CorrelationModel(BaseModel):
    key: str
    kind: str
    called_methods: list[str]
    procedure: str | None
    binding_source: str | None
    contract: ContractModel | None
    findings: list[dict[str, str]]
    invocation: dict[str, Any] | None = None


class CorrelateResponse(BaseModel):
    version: str
    generated_at: str
    summary: dict[str, int]
    results: list[CorrelationModel]
    contracts: list[ContractModel]
    probes: dict[str, dict[str, str | None]] | None = None
    errors: list[str]


# [함수 설명]
# - 목적: 요청 단위로 사용할 비동기 엔진을 제공한다.
# - 입력: 없음 (환경 설정을 사용한다)
# - 출력: AsyncEngine
# - 에러 처리: DB 설정이 없으면 503으로 응답한다.
# - 결정론: 동일 설정에 대해 동일 엔진을 재사용한다.
# - 보안: 연결 문자열은 응답에 포함하지 않는다.
def engine_dependency() -> AsyncEngine:
    try:
        return get_engine()
    except DatabaseNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database is not configured",
        ) from exc


# [함수 설명]
# - 목적: /surface 엔드포인트 요청을 처리한다.
# - 입력: 모듈 이름 목록과 표면 추출 옵션
# - 출력: 응답 모델의 주요 필드는 version, controllers, errors이다.
# - 에러 처리: 모듈 import 실패는 errors 목록에 기록하고 가능한 결과를 반환한다.
# - 결정론: 컨트롤러와 엔드포인트는 발견 순서를 유지한다.
# - 보안: 코드 본문은 응답에 포함하지 않는다.
@router.post("/surface", response_model=SurfaceResponse)
def surface(request: SurfaceRequest) -> SurfaceResponse:
    types, errors = load_types(request.modules)
    controllers = extract_controllers(types, _surface_options(request.options))
    errors = errors + [
        f"{error} ({controller.name})" for controller in controllers for error in controller.errors
    ]
    return SurfaceResponse(
        version=API_VERSION,
        controllers=[_controller_model(controller) for controller in controllers],
        errors=errors,
    )


# [함수 설명]
# - 목적: /call-graph 엔드포인트 요청을 처리한다.
# - 입력: 모듈 이름 목록, 표면 옵션, 호출 그래프 옵션
# - 출력: 응답 모델의 주요 필드는 version, calls, errors이다.
# - 에러 처리: 모듈 import 실패는 errors 목록에 기록한다.
# - 결정론: 협력자 메서드 이름은 최초 호출 순서를 유지한다.
# - 보안: 바이트코드 원문은 응답에 포함하지 않는다.
@router.post("/call-graph", response_model=CallGraphResponse)
def call_graph(request: CallGraphRequest) -> CallGraphResponse:
    types, errors = load_types(request.modules)
    calls = build_call_map(
        types,
        _call_graph_options(request.call_graph),
        _surface_options(request.options),
    )
    return CallGraphResponse(version=API_VERSION, calls=calls, errors=errors)


# [함수 설명]
# - 목적: /type-map 엔드포인트 요청을 처리한다.
# - 입력: SQL Server 타입 이름 목록
# - 출력: 타입별 클라이언트 타입, 범주, 기본값 목록
# - 에러 처리: 알 수 없는 타입은 supported=false, category=variant로 반환한다.
# - 결정론: 요청 순서를 그대로 유지한다.
# - 보안: 외부 자원에 접근하지 않는다.
@router.post("/type-map", response_model=TypeMapResponse)
def type_map(request: TypeMapRequest) -> TypeMapResponse:
    entries = []
    for sql_type in request.sql_types:
        client = DEFAULT_MAPPER.client_type(sql_type)
        supported = client is not VARIANT
        entries.append(
            TypeMapEntry(
                sql_type=sql_type,
                supported=supported,
                client_type=_type_label(client) if supported else None,
                category=DEFAULT_MAPPER.category(sql_type),
                default=_jsonable(DEFAULT_MAPPER.default_value(sql_type)) if supported else None,
            )
        )
    return TypeMapResponse(version=API_VERSION, entries=entries)


# [함수 설명]
# - 목적: /procedure 엔드포인트 요청을 처리한다.
# - 입력: 프로시저 이름과 선택적 기본 스키마
# - 출력: 카탈로그 기준 파라미터 계약
# - 에러 처리: 미존재는 404, 연결 실패는 503으로 응답한다.
# - 결정론: 파라미터는 ordinal 순서로 반환한다.
# - 보안: 카탈로그 쿼리 원문은 로그에 요약 정보로만 기록한다.
@router.post("/procedure", response_model=ProcedureResponse)
async def procedure(
    request: ProcedureRequest, engine: AsyncEngine = Depends(engine_dependency)
) -> ProcedureResponse:
    contract = await _fetch_or_raise(engine, request.name, request.default_schema)
    return ProcedureResponse(version=API_VERSION, contract=_contract_model(contract))


# [함수 설명]
# - 목적: /invoke 엔드포인트 요청을 처리한다.
# - 입력: 프로시저 이름, 기본 스키마, 선택적 타임아웃
# - 출력: 결과 행, 출력 파라미터 값, 사용된 인자, 경고 목록
# - 에러 처리: 미존재 404, 연결 실패 503, 타임아웃 504, DB 오류 502로 응답한다.
# - 결정론: 합성 인자는 타입 매퍼 규칙에 따라 결정된다.
# - 보안: 실행 배치 원문은 로그에 요약 정보로만 기록한다.
@router.post("/invoke", response_model=InvokeResponse)
async def invoke(
    request: InvokeRequest, engine: AsyncEngine = Depends(engine_dependency)
) -> InvokeResponse:
    contract = await _fetch_or_raise(engine, request.name, request.default_schema)
    timeout = request.timeout if request.timeout is not None else load_settings().invoke_timeout
    try:
        result = await invoke_with_defaults(engine, contract, timeout=timeout)
    except InvocationTimeoutError as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    except CatalogConnectionError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    except sa_exc.DBAPIError as exc:
        logger.warning(
            "invoke: procedure=%s error=%s", contract.name.unescaped_full_name, type(exc).__name__
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Invocation failed: {type(exc).__name__}",
        ) from exc
    return InvokeResponse(
        version=API_VERSION,
        procedure=result.procedure,
        row_count=len(result.rows),
        rows=_jsonable(result.rows),
        output_values=_jsonable(result.output_values),
        arguments=_jsonable(result.arguments),
        warnings=result.warnings,
    )


# [함수 설명]
# - 목적: /correlate 엔드포인트 요청을 처리한다.
# - 입력: 모듈 이름 목록, 추출/호출 그래프 옵션, invoke/probe 플래그
# - 출력: 응답 모델의 주요 필드는 version, generated_at, summary, results, contracts, probes, errors이다.
# - 에러 처리: 프로시저별 실패는 findings로 기록하고 나머지 분석을 계속한다.
# - 결정론: 엔드포인트 발견 순서, 파라미터 ordinal 순서를 유지한다.
# - 보안: SQL 원문은 로그에 요약 정보로만 기록한다.
@router.post("/correlate", response_model=CorrelateResponse)
async def correlate(
    request: CorrelateRequest, engine: AsyncEngine = Depends(engine_dependency)
) -> CorrelateResponse:
    types, import_errors = load_types(request.modules)
    settings = load_settings()
    options = ReportOptions(
        surface=_surface_options(request.options),
        call_graph=_call_graph_options(request.call_graph),
        invoke=request.invoke,
        invoke_timeout=settings.invoke_timeout,
        probe=request.probe,
    )
    report = await build_contract_report(types, engine, options)
    return CorrelateResponse(
        version=API_VERSION,
        generated_at=report["generated_at"],
        summary=report["summary"],
        results=[
            CorrelationModel(
                **{
                    **item,
                    "contract": _contract_dict_model(item["contract"]),
                    "invocation": _jsonable(item["invocation"]),
                }
            )
            for item in report["results"]
        ],
        contracts=[_contract_dict_model(item) for item in report["contracts"]],
        probes=report.get("probes"),
        errors=import_errors + report["errors"],
    )


async def _fetch_or_raise(
    engine: AsyncEngine, name: str, default_schema: str | None
) -> ProcedureContract:
    schema = default_schema or load_settings().default_schema
    try:
        return await fetch_contract_by_name(engine, name, schema)
    except ProcedureNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except CatalogConnectionError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc


def _surface_options(options: SurfaceOptions) -> ServiceSurfaceOptions:
    settings = load_settings()
    defaults = ServiceSurfaceOptions()
    return ServiceSurfaceOptions(
        controller_base_names=tuple(options.controller_base_names or defaults.controller_base_names),
        controller_suffix=options.controller_suffix or defaults.controller_suffix,
        collaborator_token=options.collaborator_token or settings.collaborator_token,
        procedure_infix=options.procedure_infix or settings.procedure_infix,
        default_schema=options.default_schema or settings.default_schema,
    )


def _call_graph_options(options: CallGraphOptions) -> ServiceCallGraphOptions:
    settings = load_settings()
    return ServiceCallGraphOptions(
        field_token=options.field_token or settings.field_token,
        max_lookback=options.max_lookback or settings.max_lookback,
    )


def _parameter_models(parameters: tuple[ParameterDescriptor, ...]) -> list[ParameterModel]:
    return [
        ParameterModel(
            name=param.name,
            type_name=param.type_name,
            full_type_name=param.full_type_name,
            is_optional=param.is_optional,
            has_default=param.has_default,
        )
        for param in parameters
    ]


def _endpoint_model(endpoint: EndpointDescriptor) -> EndpointModel:
    return EndpointModel(
        key=endpoint.key,
        owner=endpoint.owner,
        method_name=endpoint.method_name,
        http_verb=endpoint.http_verb,
        route=endpoint.route,
        parameters=_parameter_models(endpoint.parameters),
        return_type=endpoint.return_type,
        procedure_name=endpoint.procedure_name,
        binding_source=endpoint.binding_source,
    )


def _controller_model(controller: ControllerDescriptor) -> ControllerModel:
    collaborator = None
    if controller.collaborator is not None:
        collaborator = CollaboratorModel(
            name=controller.collaborator.name,
            full_name=controller.collaborator.full_name,
            parameter_name=controller.collaborator.parameter_name,
            methods=[
                CollaboratorMethodModel(
                    name=method.name,
                    parameters=_parameter_models(method.parameters),
                    return_type=method.return_type,
                    procedure_name=method.procedure_name,
                    binding_source=method.binding_source,
                )
                for method in controller.collaborator.methods
            ],
        )
    return ControllerModel(
        name=controller.name,
        full_name=controller.full_name,
        route=controller.route,
        endpoints=[_endpoint_model(endpoint) for endpoint in controller.endpoints],
        collaborator=collaborator,
        errors=list(controller.errors),
    )


def _contract_model(contract: ProcedureContract) -> ContractModel:
    return _contract_dict_model(contract.to_dict())


def _contract_dict_model(payload: dict[str, Any] | None) -> ContractModel | None:
    if payload is None:
        return None
    return ContractModel(
        schema_name=payload["schema"],
        name=payload["name"],
        full_name=payload["full_name"],
        parameters=[
            ProcedureParameterModel(**{**param, "default_value": _jsonable(param["default_value"])})
            for param in payload["parameters"]
        ],
    )


def _type_label(client: object) -> str:
    module = getattr(client, "__module__", "builtins")
    name = getattr(client, "__qualname__", repr(client))
    return name if module == "builtins" else f"{module}.{name}"


def _jsonable(value: Any) -> Any:
    # Binary values travel as base64 text; Decimal as text to keep precision.
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
