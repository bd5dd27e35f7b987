""""统一响应信封 {"e": 错误码, "d": 数据}，e == 0 即成功。

ErrorCode：稳定的数字错误码（业务结果与内部错误互不重叠）

Envelope：信封模型；serialize() 得到对外 JSON（没有数据时不带 d）

create_response(code, data=None) / is_success(resp)：便捷函数"""

from enum import IntEnum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel


class ErrorCode(IntEnum):
    SUCCESS = 0
    INTERNAL_ERROR = 1
    UNAUTHORIZED = 2
    BAD_REQUEST = 3
    USERNAME_TAKEN = 10
    USERNAME_NOT_FOUND = 11
    WRONG_PASSWORD = 12
    INVALID_TOKEN = 13
    TOKEN_EXPIRED = 14
    USER_NOT_FOUND = 15


class Envelope(BaseModel):
    e: int
    d: Optional[Dict[str, Any]] = None

    @property
    def error_code(self) -> int:
        return self.e

    @property
    def data(self) -> Optional[Dict[str, Any]]:
        return self.d

    @property
    def is_success(self) -> bool:
        return self.e == ErrorCode.SUCCESS

    def serialize(self) -> dict:
        return self.model_dump(exclude_none=True)


def create_response(code: Union[ErrorCode, int], data: Optional[Dict[str, Any]] = None) -> Envelope:
    return Envelope(e=int(code), d=data)


def is_success(resp: Optional[Envelope]) -> bool:
    return resp is not None and resp.is_success
