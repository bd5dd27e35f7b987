"""
模块职能：
- ServiceContext：进程内唯一的服务装配（Engine -> SqlBridge -> UserService），
  由入口（FastAPI lifespan / 脚本 / 测试）创建并负责 close()，不做全局单例。
- Identity：授权通过后的请求身份（user_id / username / token），
  由 UserService.authorize 的 d 构造。
"""
from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel

from authbridge.infra.bridge import SqlAlchemyBridge, SqlBridge
from authbridge.infra.db import create_db_engine
from authbridge.infra.logger import emit
from authbridge.services.users import UserService

DEFAULT_USER_TABLE = "users"


def get_user_table() -> str:
    return os.getenv("USER_TABLE") or DEFAULT_USER_TABLE


class ServiceContext:
    def __init__(self, bridge: SqlBridge, users: UserService):
        self.bridge = bridge
        self.users = users

    @classmethod
    def create(cls, database_url: Optional[str] = None, table: Optional[str] = None, **service_opts) -> "ServiceContext":
        bridge = SqlAlchemyBridge(create_db_engine(database_url))
        try:
            users = UserService(bridge, table or get_user_table(), **service_opts)
        except Exception:
            bridge.close()
            raise
        emit("service_context_ready", dialect=bridge.dialect, table=users.table)
        return cls(bridge, users)

    def close(self):
        self.bridge.close()
        emit("service_context_closed")

    def __enter__(self) -> "ServiceContext":
        return self

    def __exit__(self, *exc):
        self.close()


class Identity(BaseModel):
    user_id: int
    username: str
    token: str

    @classmethod
    def from_payload(cls, data: dict) -> "Identity":
        return cls(user_id=int(data["user_id"]), username=str(data["username"]), token=str(data["token"]))
