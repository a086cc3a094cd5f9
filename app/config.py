# [파일 설명]
# - 목적: 서비스 실행 설정을 환경 변수에서 읽어 고정된 Settings 객체로 제공한다.
# - 제공 기능: SPROC_CONTRACTS_* 환경 변수 해석과 기본값 적용을 제공한다.
# - 입력/출력: 환경 변수를 읽어 Settings 데이터클래스를 반환한다.
# - 주의 사항: 연결 문자열은 로그에 남기지 않는다.
# - 연관 모듈: app.services.db, app.api.contracts와 연동된다.
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENV_PREFIX = "SPROC_CONTRACTS_"


# [클래스 설명]
# - 역할: 서비스 전역 설정 값을 보관한다.
# - 사용 위치: 엔진 생성, 표면 추출 옵션, 호출 그래프 옵션 구성에 사용된다.
# - 핵심 동작: frozen dataclass로 실행 중 변경을 막는다.
# - 제약/주의: database_url이 비어 있으면 DB가 필요한 기능은 503으로 응답한다.
@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    default_schema: str = "dbo"
    collaborator_token: str = "Manager"
    field_token: str = "_manager"
    procedure_infix: str = "__"
    invoke_timeout: float | None = 30.0
    max_lookback: int = 8


# [함수 설명]
# - 목적: 환경 변수에서 Settings를 구성한다.
# - 입력: SPROC_CONTRACTS_DATABASE_URL 등 환경 변수
# - 출력: Settings 인스턴스
# - 에러 처리: 숫자 변환 실패 시 기본값으로 대체하고 경고를 남긴다.
# - 결정론: 동일 환경 입력에 대해 동일 결과를 반환한다.
# - 보안: 연결 문자열 자체는 로그에 기록하지 않는다.
def load_settings() -> Settings:
    defaults = Settings()
    timeout_raw = _env("INVOKE_TIMEOUT")
    settings = Settings(
        database_url=_env("DATABASE_URL") or None,
        default_schema=_env("DEFAULT_SCHEMA") or defaults.default_schema,
        collaborator_token=_env("COLLABORATOR_TOKEN") or defaults.collaborator_token,
        field_token=_env("FIELD_TOKEN") or defaults.field_token,
        procedure_infix=_env("PROCEDURE_INFIX") or defaults.procedure_infix,
        invoke_timeout=_parse_timeout(timeout_raw, defaults.invoke_timeout),
        max_lookback=_parse_int(_env("MAX_LOOKBACK"), defaults.max_lookback),
    )
    logger.info(
        "load_settings: database_configured=%s default_schema=%s",
        settings.database_url is not None,
        settings.default_schema,
    )
    return settings


def _env(name: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", "").strip()


def _parse_int(raw: str, fallback: int) -> int:
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        logger.warning("load_settings: invalid integer value ignored")
        return fallback


def _parse_timeout(raw: str, fallback: float | None) -> float | None:
    # 0 or a negative value disables the invocation timeout.
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        logger.warning("load_settings: invalid timeout value ignored")
        return fallback
    return value if value > 0 else None
