# scripts/seed_users.py
"""
种子脚本：按 .env 或默认值注册 demo 用户（已存在则跳过）。
口令以 SHA-512 摘要存储，走的是和线上一样的 UserService.register。

可作为脚本执行，也可被测试直接导入调用（run()）。
"""
import os
import sys

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("PYTHONUNBUFFERED", "1")

from authbridge.core.context import ServiceContext  # noqa: E402
from authbridge.core.response import ErrorCode  # noqa: E402
from authbridge.infra.logger import emit  # noqa: E402
from authbridge.services.users import UserService  # noqa: E402


def _get_env(k: str, default: str) -> str:
    v = os.getenv(k)
    return v if v is not None and v != "" else default


def seed_user(users: UserService, username: str, password: str) -> str:
    resp = users.register(username, password)
    if resp.e == ErrorCode.SUCCESS:
        action = "created"
    elif resp.e == ErrorCode.USERNAME_TAKEN:
        action = "exists"
    else:
        raise RuntimeError(f"seeding {username!r} failed with code {resp.e}")

    emit("seed_user", username=username, action=action)
    print(f"[seed_users] {action} user: {username}", flush=True)
    return action


def run(database_url=None, table=None) -> dict:
    emit("seed_begin")
    print("[seed_users] seeding users ...", flush=True)

    accounts = [
        (_get_env("ADMIN_USERNAME", "admin"), _get_env("ADMIN_PASSWORD", "admin")),
        (_get_env("DEMO_USERNAME", "demo"), _get_env("DEMO_PASSWORD", "demo")),
    ]
    with ServiceContext.create(database_url, table) as ctx:
        result = {username: seed_user(ctx.users, username, password) for username, password in accounts}

    emit("seed_done", status="ok")
    print("[seed_users] done.", flush=True)
    return result


if __name__ == "__main__":
    try:
        run()
        sys.exit(0)
    except Exception as e:
        emit("seed_error", error=str(e))
        print(f"[seed_users] ERROR: {e}", file=sys.stderr, flush=True)
        sys.exit(1)
