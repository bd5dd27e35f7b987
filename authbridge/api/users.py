"""
用户 API：注册 / 登录 / 校验 token / 当前用户

路由（主程序以 "/api" 前缀挂载）：
- POST /register  {username, password} -> 信封
- POST /login     {username, password} -> 信封
- GET  /authorize 头部 token            -> 信封
- GET  /me        头部 token（受保护）    -> 信封（user_id / username / token_expiry）

响应：
- 业务结果（成功或业务错误码）一律 HTTP 200 + 信封；
- INTERNAL_ERROR 用 HTTP 500 + {"e": 1}。

日志事件：
- api_register / api_login / api_authorize / api_me（只记 username 与结果码，不记密码和 token）
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from authbridge.api.deps.auth import get_identity, get_services
from authbridge.core.context import Identity, ServiceContext
from authbridge.core.response import Envelope, ErrorCode
from authbridge.infra.logger import emit

router = APIRouter(tags=["users"])


class CredentialsIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)


def _reply(resp: Envelope) -> JSONResponse:
    status = 500 if resp.e == ErrorCode.INTERNAL_ERROR else 200
    return JSONResponse(resp.serialize(), status_code=status)


@router.post("/register")
def register(body: CredentialsIn, services: ServiceContext = Depends(get_services)):
    resp = services.users.register(body.username, body.password)
    emit("api_register", username=body.username, e=resp.e)
    return _reply(resp)


@router.post("/login")
def login(body: CredentialsIn, services: ServiceContext = Depends(get_services)):
    resp = services.users.login(body.username, body.password)
    emit("api_login", username=body.username, e=resp.e)
    return _reply(resp)


@router.get("/authorize")
def authorize(token: Optional[str] = Header(default=None), services: ServiceContext = Depends(get_services)):
    resp = services.users.authorize(token or "")
    emit("api_authorize", e=resp.e)
    return _reply(resp)


@router.get("/me")
def me(ident: Identity = Depends(get_identity), services: ServiceContext = Depends(get_services)):
    resp = services.users.get(ident.user_id)
    emit("api_me", user_id=ident.user_id, e=resp.e)
    return _reply(resp)
