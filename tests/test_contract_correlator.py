# [파일 설명]
# - 목적: 코드 측 바인딩과 카탈로그 계약의 대조 결과를 검증한다.
# - 제공 기능: 바인딩 추론/충돌/모호성, 개수/타입 불일치, 누락 프로시저, 연결 실패, 전체 리포트를 테스트한다.
# - 입력/출력: fixtures 컨트롤러와 수작업 계약 또는 SQLite 카탈로그를 사용한다.
# - 주의 사항: 결과 순서는 컨트롤러 발견 순서를 따른다.
# - 연관 모듈: app.services.contract_correlator와 연동된다.
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.services.contract_correlator import (
    BINDING_CALL_GRAPH,
    KIND_COLLABORATOR_METHOD,
    KIND_ENDPOINT,
    ReportOptions,
    bound_procedure_names,
    build_contract_report,
    correlate,
    fetch_contracts,
    invoke_contracts,
)
from app.services.contract_errors import (
    AMBIGUOUS_BINDING,
    BINDING_CONFLICT,
    CONNECTION_ERROR,
    PARAMETER_COUNT_MISMATCH,
    PARAMETER_TYPE_MISMATCH,
    PROCEDURE_NOT_FOUND,
    UNSUPPORTED_TYPE,
)
from app.services.endpoint_call_graph import build_call_map
from app.services.endpoint_surface import BINDING_MARKER, extract_controllers, load_types
from app.services.sproc_schema import (
    DIRECTION_OUTPUT,
    ProcedureContract,
    ProcedureName,
    ProcedureParameter,
)


@pytest.fixture
def orders_types() -> list[type]:
    types, _ = load_types(["orders_service_fixture"])
    return types


def _ids(result) -> list[str]:
    return [finding["id"] for finding in result.findings]


def _correlate(types, contracts, failures=None):
    controllers = extract_controllers(types)
    results = correlate(controllers, build_call_map(types), contracts, failures)
    return {result.key: result for result in results}


def _catalog_like_contracts() -> dict[str, ProcedureContract]:
    return {
        "dbo.sp_Orders_GetById": ProcedureContract(
            ProcedureName("dbo", "sp_Orders_GetById"),
            (ProcedureParameter("@OrderId", "int", ordinal=1),),
        ),
        "dbo.sp_Orders_Search": ProcedureContract(
            ProcedureName("dbo", "sp_Orders_Search"),
            (
                ProcedureParameter("@CustomerId", "int", ordinal=1),
                ProcedureParameter("@Status", "nvarchar", is_nullable=True, ordinal=2),
                ProcedureParameter("@Total", "decimal", direction=DIRECTION_OUTPUT, ordinal=3),
            ),
        ),
        "sales.sp_Customers_Rename": ProcedureContract(
            ProcedureName("sales", "sp_Customers_Rename"),
            (
                ProcedureParameter("@CustomerId", "int", ordinal=1),
                ProcedureParameter("@NewName", "nvarchar", ordinal=2),
            ),
        ),
    }


def test_results_follow_discovery_order(orders_types) -> None:
    results = _correlate(orders_types, _catalog_like_contracts())

    assert list(results) == [
        "OrdersController.get_order_by_id",
        "OrdersController.search_orders",
        "OrdersController.delete_order",
        "OrdersController.get_dashboard",
        "OrdersController.get_summary",
        "IOrderManager.get_order_by_id__sp_Orders_GetById",
        "IOrderManager.search_orders__sp_Orders_Search",
        "IOrderManager.archive_order__archive__sp_Orders_Archive",
        "IOrderManager.ping",
        "CustomersController.fetch",
        "CustomersController.rename",
    ]
    assert results["OrdersController.get_order_by_id"].kind == KIND_ENDPOINT
    assert results["IOrderManager.ping"].kind == KIND_COLLABORATOR_METHOD


def test_single_reached_procedure_is_inferred_through_call_graph(orders_types) -> None:
    results = _correlate(orders_types, _catalog_like_contracts())

    get_order = results["OrdersController.get_order_by_id"]
    assert get_order.procedure == "dbo.sp_Orders_GetById"
    assert get_order.binding_source == BINDING_CALL_GRAPH
    assert get_order.called_methods == ["get_order_by_id__sp_Orders_GetById"]
    assert get_order.findings == []

    search = results["OrdersController.search_orders"]
    assert search.procedure == "dbo.sp_Orders_Search"
    assert search.findings == []


def test_several_reached_procedures_are_ambiguous(orders_types) -> None:
    results = _correlate(orders_types, _catalog_like_contracts())

    dashboard = results["OrdersController.get_dashboard"]
    assert dashboard.procedure is None
    assert _ids(dashboard) == [AMBIGUOUS_BINDING]
    assert not dashboard.has_mismatch


def test_explicit_binding_wins_and_conflict_is_reported(orders_types) -> None:
    results = _correlate(orders_types, _catalog_like_contracts())

    summary = results["OrdersController.get_summary"]
    assert summary.procedure == "dbo.sp_Orders_GetById"
    assert summary.binding_source == BINDING_MARKER
    assert _ids(summary) == [BINDING_CONFLICT, PARAMETER_TYPE_MISMATCH]
    assert summary.findings[0]["severity"] == "warning"
    assert summary.has_mismatch


def test_missing_contract_is_reported_for_endpoint_and_method(orders_types) -> None:
    results = _correlate(orders_types, _catalog_like_contracts())

    assert _ids(results["OrdersController.delete_order"]) == [PROCEDURE_NOT_FOUND]
    assert _ids(results["IOrderManager.archive_order__archive__sp_Orders_Archive"]) == [
        PROCEDURE_NOT_FOUND
    ]
    assert results["IOrderManager.ping"].procedure is None
    assert results["IOrderManager.ping"].findings == []


def test_stored_failure_replaces_not_found(orders_types) -> None:
    failure = {
        "id": CONNECTION_ERROR,
        "category": "connection_error",
        "severity": "error",
        "message": "offline",
    }

    results = _correlate(
        orders_types, _catalog_like_contracts(), {"archive.sp_Orders_Archive": failure}
    )

    assert results["OrdersController.delete_order"].findings == [failure]


def test_parameter_count_counts_inputs_only(orders_types) -> None:
    contracts = _catalog_like_contracts()
    contracts["dbo.sp_Orders_GetById"] = ProcedureContract(
        ProcedureName("dbo", "sp_Orders_GetById"),
        (
            ProcedureParameter("@OrderId", "int", ordinal=1),
            ProcedureParameter("@IncludeLines", "bit", ordinal=2),
            ProcedureParameter("@Total", "decimal", direction=DIRECTION_OUTPUT, ordinal=3),
        ),
    )

    results = _correlate(orders_types, contracts)

    assert _ids(results["OrdersController.get_order_by_id"]) == [PARAMETER_COUNT_MISMATCH]


def test_unsupported_catalog_types_warn_and_skip_type_comparison(orders_types) -> None:
    contracts = _catalog_like_contracts()
    contracts["dbo.sp_Orders_GetById"] = ProcedureContract(
        ProcedureName("dbo", "sp_Orders_GetById"),
        (ProcedureParameter("@OrderId", "sql_variant", ordinal=1),),
    )

    results = _correlate(orders_types, contracts)

    get_order = results["OrdersController.get_order_by_id"]
    assert _ids(get_order) == [UNSUPPORTED_TYPE]
    assert not get_order.has_mismatch


def test_bound_procedure_names_are_unique_in_first_seen_order(orders_types) -> None:
    assert bound_procedure_names(extract_controllers(orders_types)) == [
        "dbo.sp_Orders_GetById",
        "dbo.sp_Orders_Search",
        "archive.sp_Orders_Archive",
        "sales.sp_Customers_Rename",
    ]


@pytest.mark.asyncio
async def test_fetch_contracts_collects_failures_per_name(fake_engine_factory) -> None:
    engine = fake_engine_factory(connect_error=OSError("offline"))

    contracts, failures = await fetch_contracts(engine, ["dbo.sp_A", "dbo.sp_B"])

    assert contracts == {}
    assert [failure["id"] for failure in failures.values()] == [CONNECTION_ERROR] * 2


@pytest.mark.asyncio
async def test_build_contract_report_against_catalog(orders_types, catalog_engine) -> None:
    report = await build_contract_report(orders_types, catalog_engine)

    assert report["summary"] == {
        "controller_count": 2,
        "endpoint_count": 7,
        "collaborator_method_count": 4,
        "procedure_count": 4,
        "resolved_procedure_count": 3,
        "mismatch_count": 3,
    }
    assert [contract["full_name"] for contract in report["contracts"]] == [
        "[dbo].[sp_Orders_GetById]",
        "[dbo].[sp_Orders_Search]",
        "[sales].[sp_Customers_Rename]",
    ]
    rename = next(r for r in report["results"] if r["key"] == "CustomersController.rename")
    assert rename["procedure"] == "sales.sp_Customers_Rename"
    assert rename["findings"] == []
    assert rename["contract"]["parameters"][1]["name"] == "@NewName"
    assert report["errors"] == []
    assert "probes" not in report


@pytest.mark.asyncio
async def test_build_contract_report_is_stamped_with_generation_time(
    orders_types, catalog_engine
) -> None:
    stamp = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)

    report = await build_contract_report(orders_types, catalog_engine, clock=lambda: stamp)

    assert report["generated_at"] == "2024-05-01T09:30:00+00:00"
    assert list(report)[0] == "generated_at"


@pytest.mark.asyncio
async def test_build_contract_report_with_probes(orders_types, catalog_engine) -> None:
    report = await build_contract_report(orders_types, catalog_engine, ReportOptions(probe=True))

    assert report["probes"]["OrdersController.get_order_by_id"] == {
        "reached": "get_order_by_id__sp_Orders_GetById",
        "error": None,
    }


@pytest.mark.asyncio
async def test_build_contract_report_keeps_going_past_broken_controllers(catalog_engine) -> None:
    types, _ = load_types(["broken_controllers_fixture"])

    report = await build_contract_report(types, catalog_engine)

    assert report["summary"]["controller_count"] == 2
    assert any(error.startswith("COLLABORATOR_UNRESOLVED") for error in report["errors"])
    assert any(error.startswith("PARAMETERS_UNAVAILABLE") for error in report["errors"])
    assert report["summary"]["endpoint_count"] == 2
    stock = next(
        r for r in report["results"] if r["key"].endswith("get_stock__sp_Inventory_GetStock")
    )
    assert [finding["id"] for finding in stock["findings"]] == [PROCEDURE_NOT_FOUND]


@pytest.mark.asyncio
async def test_conventionally_bound_endpoint_invokes_with_type_defaults(
    orders_types, catalog_engine, fake_engine_factory
) -> None:
    report = await build_contract_report(orders_types, catalog_engine)
    get_order = next(
        r for r in report["results"] if r["key"] == "OrdersController.get_order_by_id"
    )
    contracts, _ = await fetch_contracts(catalog_engine, [get_order["procedure"]])
    invoker_engine = fake_engine_factory([(["OrderId"], [(0,)])])

    outcomes = await invoke_contracts(invoker_engine, contracts.values())

    assert get_order["findings"] == []
    assert outcomes["dbo.sp_Orders_GetById"]["succeeded"] is True
    assert outcomes["dbo.sp_Orders_GetById"]["arguments"] == {"@OrderId": 0}
    assert outcomes["dbo.sp_Orders_GetById"]["warnings"] == []
