""""模块职能：

读取 DATABASE_URL，创建 SQLAlchemy 引擎（即连接池），交给 SqlBridge 使用

主要函数：

get_database_url()：环境变量 DATABASE_URL，缺省落到本地 SQLite 文件

create_db_engine(url)：创建带连接池的 Engine；SQLite 额外处理：
  - check_same_thread=False，多线程共享池
  - timeout：并发写入时排队等待而不是立刻报 locked
  - 显式发出 BEGIN，让 DDL 也处在事务里（建表失败可整体回滚）"""

import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

DEFAULT_DATABASE_URL = "sqlite:///./authbridge.db"
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))


def get_database_url() -> str:
    return os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def _enable_sqlite_transactional_ddl(engine: Engine):
    # pysqlite 默认只在 DML 前隐式 BEGIN，DDL 落在自动提交里；改为由我们自己发 BEGIN
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or get_database_url()
    is_sqlite = url.startswith("sqlite")
    pre_ping = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT} if is_sqlite else {},
        pool_pre_ping=pre_ping,
    )
    if is_sqlite:
        _enable_sqlite_transactional_ddl(engine)
    return engine
