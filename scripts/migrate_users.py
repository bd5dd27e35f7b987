# scripts/migrate_users.py
"""
建用户表（若不存在）：构造一次 UserService 即完成自举。
幂等：表已存在时只打 user_table_exists，不会重建、不动数据。

可作为脚本执行，也可被测试直接导入调用（run()）。
"""

import os
import sys

# 确保脚本在控制台有输出；不影响主服务的日志设置
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from authbridge.core.context import ServiceContext  # noqa: E402
from authbridge.infra.db import get_database_url  # noqa: E402
from authbridge.infra.logger import emit  # noqa: E402


def run(database_url=None, table=None) -> str:
    emit("migrate_users_begin", database_url=database_url or get_database_url())
    print("[migrate_users] creating user table if not exists ...", flush=True)
    with ServiceContext.create(database_url, table) as ctx:
        created_table = ctx.users.table
    emit("migrate_users_done", status="ok", table=created_table)
    print(f"[migrate_users] done ({created_table}).", flush=True)
    return created_table


if __name__ == "__main__":
    print(f"[migrate_users] DATABASE_URL={get_database_url()}", flush=True)
    try:
        run()
        sys.exit(0)
    except Exception as e:
        emit("migrate_users_error", error=str(e))
        print(f"[migrate_users] ERROR: {e}", file=sys.stderr, flush=True)
        sys.exit(1)
