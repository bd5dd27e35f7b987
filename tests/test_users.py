# tests/test_users.py
""""UserService 对临时 SQLite 文件库的行为测试：

注册 → 登录 → 授权 全流程；用户名唯一（含并发注册竞态）

登录错误码区分（用户不存在 / 密码错误）；token 过期与无效区分

token 轮换；表自举幂等；内部错误不抛出、不混入业务错误码"""
import os
import threading

import pytest

os.environ.setdefault("LOG_TO_FILE", "false")

from authbridge.core.response import ErrorCode, is_success  # noqa: E402
from authbridge.core.security import TOKEN_ALPHABET, hash_password  # noqa: E402
from authbridge.infra.bridge import (  # noqa: E402
    BridgeIOError,
    NoGeneratedKeyError,
    SqlAlchemyBridge,
)
from authbridge.infra.db import create_db_engine  # noqa: E402
from authbridge.services.users import UserService, UserTableBootstrapError, user_table_ddl  # noqa: E402

TABLE = "test_user"
USERNAME = "test_username"
PASSWORD = "password123"


@pytest.fixture()
def bridge(tmp_path):
    b = SqlAlchemyBridge(create_db_engine(f"sqlite:///{tmp_path / 'users.db'}"))
    yield b
    b.close()


@pytest.fixture()
def users(bridge):
    return UserService(bridge, TABLE)


def _expire(bridge, username, when_ms):
    bridge.update(f"UPDATE {TABLE} SET token_expiry = ? WHERE username = ?", when_ms, username)


# ---------- 注册 ----------

def test_register_user(users, bridge):
    resp = users.register(USERNAME, PASSWORD)
    assert is_success(resp)
    assert resp.d["username"] == USERNAME
    assert len(resp.d["token"]) == 8
    assert set(resp.d["token"]) <= set(TOKEN_ALPHABET)
    assert resp.d["token_expiry"] > 0

    row = bridge.query_one(f"SELECT * FROM {TABLE} WHERE username = ?", USERNAME)
    assert row["password_hash"] == hash_password(PASSWORD)
    assert row["password_hash"] != PASSWORD
    assert row["token"] == resp.d["token"]
    assert row["token_expiry"] == resp.d["token_expiry"]


def test_register_expiry_is_24h_from_now(bridge):
    users = UserService(bridge, TABLE, clock=lambda: 1_000)
    resp = users.register(USERNAME, PASSWORD)
    assert resp.d["token_expiry"] == 1_000 + 86_400_000


def test_register_existing_username(users):
    first = users.register(USERNAME, PASSWORD)
    second = users.register(USERNAME, "another")
    assert second.e == ErrorCode.USERNAME_TAKEN
    # 第一个账户不受影响
    assert users.login(USERNAME, PASSWORD).is_success
    assert first.is_success


def test_register_race_on_unique_index_is_username_taken(bridge):
    class LateCheckBridge:
        """模拟先查后插的竞态：预检查永远看不到已有用户。"""
        def __init__(self, inner):
            self.inner = inner
            self.dialect = inner.dialect

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def query_one(self, sql, *params):
            if sql.startswith(f"SELECT user_id FROM {TABLE} WHERE username = ?"):
                return None
            return self.inner.query_one(sql, *params)

    UserService(bridge, TABLE).register(USERNAME, PASSWORD)
    racing = UserService(LateCheckBridge(bridge), TABLE)
    assert racing.register(USERNAME, PASSWORD).e == ErrorCode.USERNAME_TAKEN
    assert len(bridge.query_many(f"SELECT user_id FROM {TABLE}")) == 1


def test_concurrent_register_same_username(users):
    # 谁赢不确定；只断言可见结果：恰好一个成功，其余都是 USERNAME_TAKEN
    results = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        results.append(users.register(USERNAME, PASSWORD).e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == [ErrorCode.SUCCESS] + [ErrorCode.USERNAME_TAKEN] * 3


def test_register_without_generated_key_is_internal_error(bridge):
    class NoKeyBridge:
        def __init__(self, inner):
            self.inner = inner
            self.dialect = inner.dialect

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def insert(self, sql, *params):
            raise NoGeneratedKeyError("no key")

    users = UserService(NoKeyBridge(bridge), TABLE)
    assert users.register(USERNAME, PASSWORD).e == ErrorCode.INTERNAL_ERROR


def test_register_token_not_attached_is_partial_success(bridge):
    class NoUpdateBridge:
        def __init__(self, inner):
            self.inner = inner
            self.dialect = inner.dialect

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def update(self, sql, *params):
            return 0

    users = UserService(NoUpdateBridge(bridge), TABLE)
    resp = users.register(USERNAME, PASSWORD)
    assert resp.e == ErrorCode.SUCCESS
    assert resp.d == {"username": USERNAME}

    # 账户已存在，之后正常登录可拿回 token
    assert UserService(bridge, TABLE).login(USERNAME, PASSWORD).d["token"]


def test_register_token_write_failure_is_partial_success(bridge):
    class FailingUpdateBridge:
        def __init__(self, inner):
            self.inner = inner
            self.dialect = inner.dialect

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def update(self, sql, *params):
            raise BridgeIOError("connection reset")

    users = UserService(FailingUpdateBridge(bridge), TABLE)
    resp = users.register(USERNAME, PASSWORD)
    assert resp.e == ErrorCode.SUCCESS
    assert resp.d == {"username": USERNAME}

    # 行已提交：重试注册是 USERNAME_TAKEN，而不是又一次内部错误
    assert users.register(USERNAME, PASSWORD).e == ErrorCode.USERNAME_TAKEN
    row = bridge.query_one(f"SELECT username, token FROM {TABLE} WHERE username = ?", USERNAME)
    assert row == {"username": USERNAME, "token": None}
    assert UserService(bridge, TABLE).login(USERNAME, PASSWORD).d["token"]


# ---------- 登录 ----------

def test_login_user(users):
    users.register(USERNAME, PASSWORD)
    resp = users.login(USERNAME, PASSWORD)
    assert resp.is_success
    assert resp.d["username"] == USERNAME
    assert resp.d["token"]


def test_login_not_exist_username(users):
    assert users.login("nobody", "x").e == ErrorCode.USERNAME_NOT_FOUND


def test_login_wrong_password(users):
    users.register("alice", "secret")
    assert users.login("alice", "wrong").e == ErrorCode.WRONG_PASSWORD


def test_login_rotates_token(users):
    users.register(USERNAME, PASSWORD)
    t1 = users.login(USERNAME, PASSWORD).d["token"]
    t2 = users.login(USERNAME, PASSWORD).d["token"]
    assert t1 != t2
    assert users.authorize(t1).e == ErrorCode.INVALID_TOKEN
    assert users.authorize(t2).is_success


def test_concurrent_logins_last_write_wins(users):
    # 已知竞态：两个登录都拿到 token，但只有最后写入的那个仍然有效；不断言是哪一个
    users.register(USERNAME, PASSWORD)
    tokens = []
    barrier = threading.Barrier(2)

    def worker():
        barrier.wait()
        tokens.append(users.login(USERNAME, PASSWORD).d["token"])

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(tokens) == 2
    assert sum(users.authorize(t).is_success for t in tokens) == 1


# ---------- 授权 ----------

def test_round_trip(users):
    reg = users.register(USERNAME, PASSWORD)
    assert reg.is_success
    login = users.login(USERNAME, PASSWORD)
    assert login.is_success
    auth = users.authorize(login.d["token"])
    assert auth.is_success
    assert auth.d["token"] == login.d["token"]
    assert auth.d["username"] == USERNAME
    assert isinstance(auth.d["user_id"], int)
    assert auth.d["token_expiry"] == login.d["token_expiry"]


def test_incorrect_token(users):
    users.register(USERNAME, PASSWORD)
    users.login(USERNAME, PASSWORD)
    assert users.authorize("123").e == ErrorCode.INVALID_TOKEN
    assert users.authorize("garbage-token").e == ErrorCode.INVALID_TOKEN


def test_expired_token(users, bridge):
    users.register(USERNAME, PASSWORD)
    login = users.login(USERNAME, PASSWORD)
    token = login.d["token"]
    past = login.d["token_expiry"] - 2 * 86_400_000
    _expire(bridge, USERNAME, past)

    resp = users.authorize(token)
    assert resp.e == ErrorCode.TOKEN_EXPIRED
    assert resp.d == {"token_expiry": past}
    assert resp.e != users.authorize("garbage-token").e


def test_zero_expiry_is_never_valid(users, bridge):
    token = users.register(USERNAME, PASSWORD).d["token"]
    _expire(bridge, USERNAME, 0)
    assert users.authorize(token).e == ErrorCode.TOKEN_EXPIRED


def test_expiry_boundary_is_inclusive(bridge):
    now = {"ms": 5_000}
    users = UserService(bridge, TABLE, token_ttl_ms=100, clock=lambda: now["ms"])
    token = users.register(USERNAME, PASSWORD).d["token"]
    now["ms"] = 5_100
    assert users.authorize(token).is_success
    now["ms"] = 5_101
    assert users.authorize(token).e == ErrorCode.TOKEN_EXPIRED


def test_token_length_is_configurable(bridge):
    users = UserService(bridge, TABLE, token_length=16)
    assert len(users.register(USERNAME, PASSWORD).d["token"]) == 16


# ---------- 查询 ----------

def test_get_user(users):
    users.register(USERNAME, PASSWORD)
    user_id = users.authorize(users.login(USERNAME, PASSWORD).d["token"]).d["user_id"]
    resp = users.get(user_id)
    assert resp.is_success
    assert resp.d["username"] == USERNAME
    assert "password_hash" not in resp.d
    assert users.get(user_id + 1000).e == ErrorCode.USER_NOT_FOUND


# ---------- 自举与错误 ----------

def test_bootstrap_is_idempotent(bridge):
    calls = []

    class CountingBridge:
        def __init__(self, inner):
            self.inner = inner
            self.dialect = inner.dialect

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def create_table(self, *sqls):
            calls.append(sqls)
            return self.inner.create_table(*sqls)

    UserService(CountingBridge(bridge), TABLE).register(USERNAME, PASSWORD)
    again = UserService(CountingBridge(bridge), TABLE)
    assert len(calls) == 1
    assert again.login(USERNAME, PASSWORD).is_success


def test_bootstrap_failure_raises(tmp_path):
    b = SqlAlchemyBridge(create_db_engine(f"sqlite:///{tmp_path / 'missing_dir' / 'x.db'}"))
    try:
        with pytest.raises(UserTableBootstrapError):
            UserService(b, TABLE)
    finally:
        b.close()


def test_invalid_table_name(bridge):
    with pytest.raises(ValueError):
        UserService(bridge, "users; DROP TABLE x")


def test_bridge_failure_becomes_internal_error(bridge):
    class BrokenBridge:
        dialect = "sqlite"

        def table_exists(self, name):
            return True

        def query_one(self, sql, *params):
            raise BridgeIOError("connection refused")

    users = UserService(BrokenBridge(), TABLE)
    assert users.register(USERNAME, PASSWORD).e == ErrorCode.INTERNAL_ERROR
    assert users.login(USERNAME, PASSWORD).e == ErrorCode.INTERNAL_ERROR
    assert users.authorize("tok").e == ErrorCode.INTERNAL_ERROR
    assert users.get(1).e == ErrorCode.INTERNAL_ERROR


def test_schema_indexes_created(users, bridge):
    names = {r["name"] for r in bridge.query_many(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?", TABLE,
    )}
    assert f"{TABLE}_username_uindex" in names
    assert f"{TABLE}_token_index" in names


@pytest.mark.parametrize("dialect, pk_fragment", [
    ("sqlite", "AUTOINCREMENT"),
    ("mysql", "AUTO_INCREMENT"),
    ("postgresql", "BIGSERIAL"),
    ("oracle", "IDENTITY"),
])
def test_user_table_ddl_per_dialect(dialect, pk_fragment):
    create_sql, index_sqls = user_table_ddl("accounts", dialect)
    assert create_sql.startswith("CREATE TABLE IF NOT EXISTS accounts (")
    assert pk_fragment in create_sql
    assert len(index_sqls) == 2
    assert "UNIQUE" in index_sqls[0] and "(username)" in index_sqls[0]
