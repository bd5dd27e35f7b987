"""
模块职责：统一日志配置与结构化输出（控制台 + 可选滚动文件）。
- configure_logging(): 按环境变量设置等级与落盘，uvicorn 日志合流到同一套 handler。
- emit(event, **fields): 结构化事件（dict -> 一行 JSON），便于检索。
- emit_error(event, **fields): 同上，level=ERROR。

约定：事件字段里不出现明文密码与 token。
"""
import json
import logging
import os
import pathlib
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler


LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "false").lower() == "true"
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FILE = os.getenv("LOG_FILE", "authbridge.log")
LOG_ROTATE_WHEN = os.getenv("LOG_ROTATE_WHEN", "midnight")
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "7"))

_configured = False

_logger = logging.getLogger("authbridge")


def configure_logging():
    global _configured
    if _configured:
        return

    level = getattr(logging, LEVEL, logging.INFO)
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    ))
    root.addHandler(console)

    if LOG_TO_FILE:
        pathlib.Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
        fileh = TimedRotatingFileHandler(
            os.path.join(LOG_DIR, LOG_FILE),
            when=LOG_ROTATE_WHEN, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
        )
        fileh.setLevel(level)
        # 文件里只写 message（纯 JSON 一行）
        fileh.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(fileh)

    root.setLevel(level)

    for ln in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(ln)
        lg.handlers = []
        lg.propagate = True

    _configured = True


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def _record(event: str, level: str, fields: dict) -> str:
    rec = {"ts": _now_iso(), "level": level, "event": event, **fields}
    try:
        return json.dumps(rec, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(rec)


def emit(event: str, level: str = "INFO", **fields):
    """
    结构化日志，默认 INFO。
    用法：emit("user_login_ok", user_id=1, username="demo")
    """
    _logger.log(getattr(logging, level.upper(), logging.INFO), _record(event, level.upper(), fields))


def emit_error(event: str, **fields):
    """错误日志（level=ERROR）。用法：emit_error("bridge_query_error", error=str(e))"""
    _logger.error(_record(event, "ERROR", fields))
