# [파일 설명]
# - 목적: 생성된 SQL 배치와 식별자를 안전하게 다루기 위한 공통 도구를 제공한다.
# - 제공 기능: 로그용 SQL 요약(길이/해시), T-SQL 식별자 인용과 구분자 제거, SQL 원문 없는 예외 설명을 제공한다.
# - 입력/출력: 원문 SQL 또는 식별자 문자열을 입력으로 받아 요약 dict/문자열을 반환한다.
# - 주의 사항: 원문 SQL 자체는 반환하거나 로그에 남기지 않는다.
# - 연관 모듈: sproc_schema, sproc_invoker에서 사용된다.
from __future__ import annotations

import hashlib

from sqlalchemy import exc as sa_exc
from sqlglot import exp

IDENTIFIER_DELIMITERS = (("[", "]"), ('"', '"'), ("`", "`"))


# [함수 설명]
# - 목적: 로그에 남길 SQL 요약 정보를 계산한다.
# - 입력: sql: str
# - 출력: len, sha256_8 필드를 가진 dict를 반환한다.
# - 보안: 원문 SQL 대신 길이와 해시만 노출한다.
def summarize_sql(sql: str) -> dict[str, int | str]:
    sql_hash = hashlib.sha256(sql.encode("utf-8")).hexdigest()[:8]
    return {"len": len(sql), "sha256_8": sql_hash}


# [함수 설명]
# - 목적: 식별자를 감싼 대괄호/따옴표 구분자를 제거한다.
# - 입력: part: str
# - 출력: 구분자가 제거된 식별자 문자열을 반환한다.
# - 에러 처리: 짝이 맞지 않는 구분자는 그대로 둔다.
def strip_identifier_delimiters(part: str) -> str:
    part = part.strip()
    for start, end in IDENTIFIER_DELIMITERS:
        if part.startswith(start) and part.endswith(end) and len(part) > 1:
            return part[1:-1]
    return part


# [함수 설명]
# - 목적: T-SQL 방언 규칙으로 식별자를 인용한다.
# - 입력: name: str
# - 출력: [name] 형태의 문자열을 반환한다. ']' 문자는 ']]'로 이스케이프된다.
# - 결정론: sqlglot 생성기를 사용해 항상 동일한 결과를 반환한다.
def quote_identifier(name: str) -> str:
    return exp.to_identifier(name, quoted=True).sql(dialect="tsql")


# [함수 설명]
# - 목적: 예외를 응답/로그에 실을 수 있는 한 줄 설명으로 변환한다.
# - 입력: exc: BaseException
# - 출력: "예외타입: 메시지" 형태의 문자열을 반환한다.
# - 보안: SQLAlchemy 문장 오류는 SQL 원문을 포함하므로 드라이버 원본 예외 메시지만 사용한다.
def describe_error(exc: BaseException) -> str:
    if isinstance(exc, sa_exc.StatementError):
        return f"{type(exc).__name__}: {exc.orig}"
    return f"{type(exc).__name__}: {exc}"
