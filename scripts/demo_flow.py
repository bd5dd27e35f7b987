# scripts/demo_flow.py
"""
演示完整流程：register → login → authorize，逐步打印信封。
用法：python -m scripts.demo_flow [username] [password]
"""
import json
import os
import sys

os.environ.setdefault("LOG_TO_FILE", "false")

from authbridge.core.context import ServiceContext  # noqa: E402
from authbridge.infra.logger import configure_logging  # noqa: E402


def run(username: str = "testuser", password: str = "testpassword", database_url=None) -> dict:
    with ServiceContext.create(database_url) as ctx:
        register = ctx.users.register(username, password)
        print("Register response:", json.dumps(register.serialize()), flush=True)

        login = ctx.users.login(username, password)
        print("Login response:", json.dumps(login.serialize()), flush=True)

        token = (login.d or {}).get("token", "")
        authorize = ctx.users.authorize(token)
        print("Authorization response:", json.dumps(authorize.serialize()), flush=True)

    return {"register": register, "login": login, "authorize": authorize}


if __name__ == "__main__":
    configure_logging()
    run(*sys.argv[1:3])
