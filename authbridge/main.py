"""
应用入口：
- 加载 .env（先 .env.example 作默认，再用 .env 覆盖）
- lifespan 启动阶段：配置日志 → 打印 logger_config → 装配 ServiceContext（含用户表自举）
- 装载请求日志中间件、信封异常处理、路由
- 提供 /health
"""
from pathlib import Path
from dotenv import load_dotenv

# 1) 先加载 .env，务必在导入 logger / services 之前
ROOT = Path(__file__).resolve().parents[1]
ENV = ROOT / ".env"
ENV_EXAMPLE = ROOT / ".env.example"
if ENV_EXAMPLE.exists():
    load_dotenv(ENV_EXAMPLE, override=False)
if ENV.exists():
    load_dotenv(ENV, override=True)

# 2) 正常导入
from contextlib import asynccontextmanager  # noqa: E402
from fastapi import FastAPI, Request  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from authbridge.api import users as users_api  # noqa: E402
from authbridge.api.deps.auth import EnvelopeError  # noqa: E402
from authbridge.core.context import ServiceContext  # noqa: E402
from authbridge.core.response import ErrorCode, create_response  # noqa: E402
from authbridge.infra.logger import (  # noqa: E402
    configure_logging, emit,
    LOG_TO_FILE, LOG_DIR, LOG_FILE, LOG_ROTATE_WHEN, LOG_BACKUP_COUNT,
)
from authbridge.middleware.logging import RequestLoggingMiddleware  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    configure_logging()
    emit(
        "logger_config",
        to_file=LOG_TO_FILE, dir=LOG_DIR, file=LOG_FILE,
        when=LOG_ROTATE_WHEN, backup=LOG_BACKUP_COUNT,
    )
    app.state.services = ServiceContext.create()
    emit("app_ready")
    yield
    # shutdown
    app.state.services.close()
    emit("app_shutdown")


app = FastAPI(title="authbridge", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(EnvelopeError)
async def envelope_error_handler(request: Request, exc: EnvelopeError):
    return JSONResponse(exc.envelope.serialize(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    emit("request_invalid", path=str(request.url.path), errors=len(exc.errors()))
    return JSONResponse(create_response(ErrorCode.BAD_REQUEST).serialize(), status_code=422)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(users_api.router, prefix="/api", tags=["users"])
