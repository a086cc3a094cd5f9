# [파일 설명]
# - 목적: FastAPI 애플리케이션을 생성하고 라우터를 조립한다.
# - 제공 기능: /health 엔드포인트, /contracts 라우터, MCP 라우트 등록을 제공한다.
# - 입력/출력: HTTP 요청에 대해 상태 정보와 계약 분석 결과를 반환한다.
# - 주의 사항: 종료 시 공유 DB 엔진을 정리한다.
# - 연관 모듈: app.api.contracts 라우터, app.mcp_streamable_http와 연동된다.
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response

from app.api.contracts import router as contracts_router
from app.mcp_streamable_http import mcp_get, mcp_post
from app.services.db import dispose_engine


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await dispose_engine()


app = FastAPI(title="sproc-contracts", lifespan=lifespan)


# [함수 설명]
# - 목적: 서비스 상태 확인을 위한 헬스 체크 응답을 제공한다.
# - 입력: 요청 바디 없이 호출된다.
# - 출력: status 필드를 포함한 간단한 상태 응답을 반환한다.
# - 에러 처리: 내부 예외 없이 즉시 성공 응답을 반환한다.
# - 결정론: 항상 동일한 상태 값을 반환하도록 유지한다.
# - 보안: DB 연결 정보는 응답에 포함하지 않는다.
@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(contracts_router, prefix="/contracts")


@app.post("/mcp")
async def mcp_post_route(request: Request) -> Response:
    return await mcp_post(request)


@app.get("/mcp")
def mcp_get_route() -> Response:
    return mcp_get()
