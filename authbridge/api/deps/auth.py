# authbridge/api/deps/auth.py
from typing import Optional

from fastapi import Depends, Header, Request

from authbridge.core.context import Identity, ServiceContext
from authbridge.core.response import ErrorCode, create_response
from authbridge.infra.logger import emit


class EnvelopeError(Exception):
    """路由层直接以信封结束请求（由 main 里的异常处理器转成 JSONResponse）。"""

    def __init__(self, code: ErrorCode, status_code: int = 200):
        super().__init__(code.name)
        self.envelope = create_response(code)
        self.status_code = status_code


def get_services(request: Request) -> ServiceContext:
    return request.app.state.services


def get_identity(
    token: Optional[str] = Header(default=None),
    services: ServiceContext = Depends(get_services),
) -> Identity:
    """
    从请求头 `token` 解析当前用户；缺失或校验失败一律 401 + {"e": 2}。
    """
    if not token:
        emit("auth_missing_header")
        raise EnvelopeError(ErrorCode.UNAUTHORIZED, status_code=401)

    resp = services.users.authorize(token)
    if resp.e == ErrorCode.INTERNAL_ERROR:
        raise EnvelopeError(ErrorCode.INTERNAL_ERROR, status_code=500)
    if not resp.is_success:
        emit("auth_rejected", reason=ErrorCode(resp.e).name)
        raise EnvelopeError(ErrorCode.UNAUTHORIZED, status_code=401)
    return Identity.from_payload(resp.d)
