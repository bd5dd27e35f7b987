"""
模块职能：
- SqlBridge：通用 SQL 执行门面（与业务无关），只认“参数化 SQL + 位置参数”。
- SqlAlchemyBridge：基于 SQLAlchemy Engine（连接池）的实现，覆盖 SQLAlchemy 支持的各方言。
- 结果行 -> Record（有序 dict：列标签 -> 标量），参数 -> 绑定值，均不做隐式类型转换。

约定：
- 占位符统一写 `?`，按调用顺序 1-based 绑定（内部改写为 :p1..:pN）。
  字面量和注释里的 `?` 不算；PostgreSQL jsonb 的 `?` 运算符不可用，改用 jsonb_exists 等函数。
- “查无此行”返回 None / []；查询失败一律抛 BridgeError 子类，二者不会混淆。
- 每次调用独立借还一个连接（with 作用域），任何路径都会归还。

日志：
- bridge_table_check_error / bridge_create_table_ok / bridge_create_table_error
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.elements import TextClause

from authbridge.infra.logger import emit, emit_error

Scalar = Union[None, bool, int, float, str]
Record = Dict[str, Scalar]
Key = Union[int, str]

_PARAM_TYPES = (str, int, float, bool)


class BridgeError(Exception):
    """所有桥接层错误的基类。"""


class BridgeIOError(BridgeError):
    """连接失败、语句准备/执行失败。"""


class ConstraintViolationError(BridgeIOError):
    """唯一键等完整性约束冲突。"""


class InsertRejectedError(BridgeError):
    """INSERT 影响 0 行。"""


class NoGeneratedKeyError(BridgeError):
    """INSERT 成功但引擎没有给出自增主键。"""


class UnsupportedParameterError(BridgeError, TypeError):
    """参数类型不在 str/int/float/bool/None 之内。"""


class SqlBridge(Protocol):
    dialect: str

    def table_exists(self, name: str) -> bool: ...

    def create_table(self, create_sql: str, *index_sqls: str) -> bool: ...

    def query_one(self, sql: str, *params: Scalar) -> Optional[Record]: ...

    def query_many(self, sql: str, *params: Scalar) -> List[Record]: ...

    def insert(self, sql: str, *params: Scalar) -> Key: ...

    def update(self, sql: str, *params: Scalar) -> int: ...

    def close(self) -> None: ...


def to_scalar(value: Any) -> Scalar:
    if value is None:
        return None
    # bool 是 int 的子类，必须先判断
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return float(value)
        return int(value) if value == value.to_integral_value() else float(value)
    return str(value)


def row_to_record(row: Mapping[str, Any]) -> Record:
    return {str(label): to_scalar(value) for label, value in row.items()}


def bind_positional(sql: str, params: Sequence[Any]) -> Tuple[TextClause, Dict[str, Any]]:
    """
    把 `?` 改写为 :p1..:pN 并校验参数。
    单引号/双引号内、`--` 行注释和 `/* */` 块注释里的 `?` 原样保留
    （`''` 转义按 SQL 规则处理），其中的冒号做转义。
    不支持 PostgreSQL jsonb 的 `?` / `?|` / `?&` 运算符，会被当成占位符；
    改用 jsonb_exists / jsonb_exists_any / jsonb_exists_all。
    """
    out = []
    quote = None
    n = 0
    i = 0
    size = len(sql)
    while i < size:
        ch = sql[i]
        if quote:
            if ch == quote:
                quote = None
            # 字面量里的冒号不能被 text() 当成绑定参数
            out.append("\\:" if ch == ":" else ch)
            i += 1
        elif ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
        elif sql.startswith("--", i) or sql.startswith("/*", i):
            if ch == "-":
                end = sql.find("\n", i)
                end = size if end < 0 else end
            else:
                end = sql.find("*/", i + 2)
                end = size if end < 0 else end + 2
            out.append(sql[i:end].replace(":", "\\:"))
            i = end
        elif ch == "?":
            n += 1
            out.append(f":p{n}")
            i += 1
        else:
            out.append(ch)
            i += 1

    if n != len(params):
        raise BridgeIOError(f"statement expects {n} parameter(s), got {len(params)}")

    bound = {}
    for i, value in enumerate(params, start=1):
        if value is not None and not isinstance(value, _PARAM_TYPES):
            raise UnsupportedParameterError(
                f"parameter {i} has unsupported type {type(value).__name__}"
            )
        bound[f"p{i}"] = value
    return text("".join(out)), bound


class SqlAlchemyBridge:
    """SqlBridge 的 SQLAlchemy 实现；engine 由外部创建并持有连接池配置。"""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    def table_exists(self, name: str) -> bool:
        try:
            return inspect(self._engine).has_table(name)
        except SQLAlchemyError as e:
            emit_error("bridge_table_check_error", table=name, error=str(e))
            return False

    def create_table(self, create_sql: str, *index_sqls: str) -> bool:
        """建表 + 建索引，单事务：任一失败整体回滚并返回 False。"""
        try:
            with self._engine.connect() as conn:
                trans = conn.begin()
                try:
                    conn.execute(text(create_sql))
                    for index_sql in index_sqls:
                        conn.execute(text(index_sql))
                    trans.commit()
                except SQLAlchemyError as e:
                    trans.rollback()
                    emit_error("bridge_create_table_error", error=str(e))
                    return False
        except SQLAlchemyError as e:
            emit_error("bridge_create_table_error", error=str(e))
            return False
        emit("bridge_create_table_ok", indexes=len(index_sqls))
        return True

    def query_one(self, sql: str, *params: Scalar) -> Optional[Record]:
        stmt, bound = bind_positional(sql, params)
        try:
            with self._engine.connect() as conn:
                row = conn.execute(stmt, bound).mappings().first()
        except SQLAlchemyError as e:
            raise self._wrap(e) from e
        return row_to_record(row) if row is not None else None

    def query_many(self, sql: str, *params: Scalar) -> List[Record]:
        stmt, bound = bind_positional(sql, params)
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt, bound).mappings().all()
        except SQLAlchemyError as e:
            raise self._wrap(e) from e
        return [row_to_record(r) for r in rows]

    def insert(self, sql: str, *params: Scalar) -> Key:
        stmt, bound = bind_positional(sql, params)
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt, bound)
                if result.returns_rows:
                    # INSERT ... RETURNING <key>
                    row = result.first()
                    if row is None:
                        raise InsertRejectedError("insert failed, no rows affected")
                    key = row[0]
                else:
                    if result.rowcount == 0:
                        raise InsertRejectedError("insert failed, no rows affected")
                    key = result.lastrowid
        except SQLAlchemyError as e:
            raise self._wrap(e) from e

        if key is None:
            raise NoGeneratedKeyError("insert succeeded but no generated key is available")
        return key

    def update(self, sql: str, *params: Scalar) -> int:
        stmt, bound = bind_positional(sql, params)
        try:
            with self._engine.begin() as conn:
                return conn.execute(stmt, bound).rowcount
        except SQLAlchemyError as e:
            raise self._wrap(e) from e

    def close(self) -> None:
        self._engine.dispose()

    @staticmethod
    def _wrap(e: SQLAlchemyError) -> BridgeIOError:
        if isinstance(e, IntegrityError):
            return ConstraintViolationError(str(e.orig) if e.orig is not None else str(e))
        return BridgeIOError(str(e))
