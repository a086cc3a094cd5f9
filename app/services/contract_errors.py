from __future__ import annotations

CATEGORY_CONTRACT_MISMATCH = "contract_mismatch"
CATEGORY_UNSUPPORTED_TYPE = "unsupported_type"
CATEGORY_AMBIGUOUS_BINDING = "ambiguous_binding"
CATEGORY_CONNECTION = "connection_error"
CATEGORY_INVOCATION = "invocation_error"

PROCEDURE_NOT_FOUND = "PROCEDURE_NOT_FOUND"
PARAMETER_COUNT_MISMATCH = "PARAMETER_COUNT_MISMATCH"
PARAMETER_TYPE_MISMATCH = "PARAMETER_TYPE_MISMATCH"
UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
AMBIGUOUS_BINDING = "AMBIGUOUS_BINDING"
BINDING_CONFLICT = "BINDING_CONFLICT"
CONNECTION_ERROR = "CONNECTION_ERROR"
INTROSPECTION_FAILED = "INTROSPECTION_FAILED"
INVOCATION_FAILED = "INVOCATION_FAILED"
INVOCATION_TIMEOUT = "INVOCATION_TIMEOUT"


class ContractError(Exception):
    """Base class for failures raised by catalog and invocation calls."""

    finding_id = INTROSPECTION_FAILED
    category = CATEGORY_CONTRACT_MISMATCH

    def __init__(self, procedure: str, message: str) -> None:
        super().__init__(message)
        self.procedure = procedure
        self.message = message

    def to_finding(self) -> dict[str, str]:
        return make_finding(self.finding_id, self.category, self.message, severity="error")


class ProcedureNotFoundError(ContractError, LookupError):
    """The named procedure does not exist in the given schema."""

    finding_id = PROCEDURE_NOT_FOUND


class CatalogConnectionError(ContractError, ConnectionError):
    """The database could not be reached. Never retried by the service."""

    finding_id = CONNECTION_ERROR
    category = CATEGORY_CONNECTION


class InvocationTimeoutError(ContractError, TimeoutError):
    finding_id = INVOCATION_TIMEOUT
    category = CATEGORY_INVOCATION


def make_finding(
    finding_id: str,
    category: str,
    message: str,
    *,
    severity: str = "error",
) -> dict[str, str]:
    return {
        "id": finding_id,
        "category": category,
        "severity": severity,
        "message": message,
    }
