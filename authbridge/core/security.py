# authbridge/core/security.py
""""口令摘要与 token 生成。

hash_password()：SHA-512 十六进制摘要（passlib hex_sha512），确定性，
可直接放进 WHERE 条件比对；明文不落库、不进日志。

generate_token()：字母数字随机串，长度由调用方给出（默认 8）。

now_ms()：当前毫秒时间戳，token_expiry 与之比较。"""

import secrets
import string
import time

from passlib.context import CryptContext

TOKEN_ALPHABET = string.ascii_letters + string.digits
DEFAULT_TOKEN_LENGTH = 8
DEFAULT_TOKEN_TTL_MS = 24 * 60 * 60 * 1000

pwd_context = CryptContext(schemes=["hex_sha512"])


def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


def generate_token(length: int = DEFAULT_TOKEN_LENGTH) -> str:
    if length <= 0:
        raise ValueError("token length must be positive")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def now_ms() -> int:
    return int(time.time() * 1000)
