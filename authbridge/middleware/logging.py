"""
模块职责：请求级日志中间件。
- request_id：沿用请求头 x-request-id，没有则生成；
- 记录 request_start / request_end（耗时、状态码）；
- 异常输出 request_error 后继续抛出，交给 FastAPI 处理。
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from authbridge.infra.logger import emit, emit_error

REQUEST_ID_HEADER = "x-request-id"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        path = str(request.url.path)
        start = time.perf_counter()
        emit("request_start", request_id=rid, method=request.method, path=path)
        try:
            response: Response = await call_next(request)
        except Exception as e:
            emit_error(
                "request_error",
                request_id=rid,
                method=request.method,
                path=path,
                error=repr(e),
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        emit(
            "request_end",
            request_id=rid,
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = rid
        return response
