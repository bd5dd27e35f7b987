"""
模块职能：
- 用户注册 / 登录 / token 校验，只通过 SqlBridge 访问持久层。
- 构造时检查用户表，不存在则单事务建表 + 唯一索引(username) + 普通索引(token)。

返回值：
- 每个操作都返回 Envelope（成功 / 业务错误码 / INTERNAL_ERROR），不向调用方抛异常。
- 注册/登录成功但 token 没写进去时，仍为成功，只是 d 里没有 token 字段。

并发：
- 不加进程内锁；username 唯一性由唯一索引兜底，插入时撞唯一键按 USERNAME_TAKEN 处理。
- 同一用户并发登录，最后一次写入的 token 生效。

日志：
- user_table_created / user_table_exists
- user_register_taken / user_register_ok / user_register_token_missing
- user_login_not_found / user_login_bad_password / user_login_ok
- user_authorize_invalid / user_authorize_expired
- user_op_error（内部错误，带 op）
"""
from __future__ import annotations

import os
import re
from typing import Callable, List, Tuple

from authbridge.core.response import Envelope, ErrorCode, create_response
from authbridge.core.security import (
    DEFAULT_TOKEN_LENGTH,
    DEFAULT_TOKEN_TTL_MS,
    generate_token,
    hash_password,
    now_ms,
)
from authbridge.infra.bridge import (
    BridgeError,
    ConstraintViolationError,
    Record,
    SqlBridge,
)
from authbridge.infra.logger import emit, emit_error

TOKEN_LENGTH = int(os.getenv("TOKEN_LENGTH", str(DEFAULT_TOKEN_LENGTH)))
TOKEN_TTL_MS = int(os.getenv("TOKEN_TTL_MS", str(DEFAULT_TOKEN_TTL_MS)))

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COLUMNS = (
    "username VARCHAR(64) NOT NULL,"
    "password_hash VARCHAR(2048) NOT NULL,"
    "token VARCHAR(2048),"
    "token_expiry BIGINT NOT NULL DEFAULT 0"
)

# 方言 -> 主键列定义
_PRIMARY_KEY = {
    "sqlite": "user_id INTEGER PRIMARY KEY AUTOINCREMENT",
    "mysql": "user_id BIGINT PRIMARY KEY AUTO_INCREMENT",
    "mariadb": "user_id BIGINT PRIMARY KEY AUTO_INCREMENT",
    "postgresql": "user_id BIGSERIAL PRIMARY KEY",
}
_GENERIC_PRIMARY_KEY = "user_id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY"


class UserTableBootstrapError(RuntimeError):
    """用户表不存在且建表失败。"""


def user_table_ddl(table: str, dialect: str) -> Tuple[str, List[str]]:
    """返回 (建表语句, [索引语句...])。"""
    pk = _PRIMARY_KEY.get(dialect, _GENERIC_PRIMARY_KEY)
    create_sql = f"CREATE TABLE IF NOT EXISTS {table} ({pk},{_COLUMNS})"

    if dialect in ("mysql", "mariadb"):
        # MySQL 不支持 CREATE INDEX IF NOT EXISTS；token 列过长，用前缀索引
        index_sqls = [
            f"CREATE UNIQUE INDEX {table}_username_uindex ON {table} (username)",
            f"CREATE INDEX {table}_token_index ON {table} (token(191))",
        ]
    else:
        index_sqls = [
            f"CREATE UNIQUE INDEX IF NOT EXISTS {table}_username_uindex ON {table} (username)",
            f"CREATE INDEX IF NOT EXISTS {table}_token_index ON {table} (token)",
        ]
    return create_sql, index_sqls


class UserService:
    def __init__(
        self,
        bridge: SqlBridge,
        table: str,
        *,
        token_length: int = TOKEN_LENGTH,
        token_ttl_ms: int = TOKEN_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        if not _IDENTIFIER.match(table or ""):
            raise ValueError(f"invalid table name: {table!r}")
        self.bridge = bridge
        self.table = table
        self.token_length = token_length
        self.token_ttl_ms = token_ttl_ms
        self._clock = clock

        if bridge.table_exists(table):
            emit("user_table_exists", table=table)
        else:
            self._create_table()

    def _create_table(self):
        create_sql, index_sqls = user_table_ddl(self.table, self.bridge.dialect)
        if not self.bridge.create_table(create_sql, *index_sqls):
            raise UserTableBootstrapError(f"failed to create user table {self.table!r}")
        emit("user_table_created", table=self.table, dialect=self.bridge.dialect)

    def _issue_token(self, user_id) -> Tuple[str, int, bool]:
        """生成新 token 并覆盖写入；返回 (token, expiry, 是否写入成功)。"""
        token = generate_token(self.token_length)
        expiry = self._clock() + self.token_ttl_ms
        affected = self.bridge.update(
            f"UPDATE {self.table} SET token = ?, token_expiry = ? WHERE user_id = ?",
            token, expiry, user_id,
        )
        return token, expiry, affected > 0

    def _internal_error(self, op: str, e: Exception, **fields) -> Envelope:
        emit_error("user_op_error", op=op, table=self.table, error_type=type(e).__name__, error=str(e), **fields)
        return create_response(ErrorCode.INTERNAL_ERROR)

    def register(self, username: str, password: str) -> Envelope:
        try:
            existing = self.bridge.query_one(
                f"SELECT user_id FROM {self.table} WHERE username = ?", username,
            )
            if existing is not None:
                emit("user_register_taken", username=username)
                return create_response(ErrorCode.USERNAME_TAKEN)

            try:
                user_id = self.bridge.insert(self._insert_sql(), username, hash_password(password))
            except ConstraintViolationError:
                # 先查后插之间被并发注册抢先
                emit("user_register_taken", username=username, race=True)
                return create_response(ErrorCode.USERNAME_TAKEN)

            data = {"username": username}
            try:
                token, expiry, attached = self._issue_token(user_id)
            except BridgeError as e:
                # 账户已落库，token 没挂上；之后登录即可拿回 token
                emit("user_register_token_missing", level="WARNING", user_id=user_id,
                     username=username, error=str(e))
                return create_response(ErrorCode.SUCCESS, data)
            if attached:
                data["token"] = token
                data["token_expiry"] = expiry
                emit("user_register_ok", user_id=user_id, username=username)
            else:
                emit("user_register_token_missing", level="WARNING", user_id=user_id, username=username)
            return create_response(ErrorCode.SUCCESS, data)
        except BridgeError as e:
            return self._internal_error("register", e, username=username)

    def login(self, username: str, password: str) -> Envelope:
        try:
            row = self.bridge.query_one(
                f"SELECT user_id FROM {self.table} WHERE username = ? AND password_hash = ?",
                username, hash_password(password),
            )
            if row is None:
                known = self.bridge.query_one(
                    f"SELECT user_id FROM {self.table} WHERE username = ?", username,
                )
                if known is None:
                    emit("user_login_not_found", username=username)
                    return create_response(ErrorCode.USERNAME_NOT_FOUND)
                emit("user_login_bad_password", username=username)
                return create_response(ErrorCode.WRONG_PASSWORD)

            user_id = _required(row, "user_id")
            data = {"username": username}
            token, expiry, attached = self._issue_token(user_id)
            if attached:
                data["token"] = token
                data["token_expiry"] = expiry
            emit("user_login_ok", user_id=user_id, username=username, token_attached=attached)
            return create_response(ErrorCode.SUCCESS, data)
        except (BridgeError, LookupError) as e:
            return self._internal_error("login", e, username=username)

    def authorize(self, token: str) -> Envelope:
        try:
            row = self.bridge.query_one(
                f"SELECT user_id, username, token_expiry FROM {self.table} WHERE token = ?", token,
            )
            if row is None:
                emit("user_authorize_invalid")
                return create_response(ErrorCode.INVALID_TOKEN)

            expiry = int(_required(row, "token_expiry"))
            if expiry <= 0 or self._clock() > expiry:
                emit("user_authorize_expired", user_id=row.get("user_id"), token_expiry=expiry)
                return create_response(ErrorCode.TOKEN_EXPIRED, {"token_expiry": expiry})

            return create_response(ErrorCode.SUCCESS, {
                "token": token,
                "token_expiry": expiry,
                "user_id": _required(row, "user_id"),
                "username": _required(row, "username"),
            })
        except (BridgeError, LookupError, TypeError, ValueError) as e:
            return self._internal_error("authorize", e)

    def get(self, user_id: int) -> Envelope:
        try:
            row = self.bridge.query_one(
                f"SELECT user_id, username, token_expiry FROM {self.table} WHERE user_id = ?", user_id,
            )
        except BridgeError as e:
            return self._internal_error("get", e, user_id=user_id)
        if row is None:
            return create_response(ErrorCode.USER_NOT_FOUND)
        return create_response(ErrorCode.SUCCESS, dict(row))

    def _insert_sql(self) -> str:
        sql = f"INSERT INTO {self.table} (username, password_hash) VALUES (?, ?)"
        if self.bridge.dialect == "postgresql":
            # psycopg 拿不到 lastrowid，用 RETURNING 取主键
            sql += " RETURNING user_id"
        return sql


def _required(row: Record, column: str):
    value = row.get(column)
    if value is None:
        raise LookupError(f"column {column!r} is missing or null")
    return value
