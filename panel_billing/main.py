"""
FastAPI 主入口
"""
import logging
import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response, HTTPException, Request, status, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from panel_billing.config import get_settings
from panel_billing.database import init_db
from panel_billing.routers import admin, balance, orders, plan_change, plans
from panel_billing.services.errors import (
    BillingError,
    InsufficientBalance,
    InvalidTransition,
    LedgerError,
    NoPendingDowngrade,
    NotFound,
    PendingDowngradeExists,
)
from panel_billing.utils.request_context import request_id_ctx_var, RequestIdFilter, JsonFormatter
from panel_billing.utils.metrics import REQUEST_COUNT, REQUEST_LATENCY, IN_PROGRESS, get_route_name
from panel_billing.utils.security import verify_metrics_basic_auth

# Initialize settings
settings = get_settings()
logger = logging.getLogger(__name__)

# 按类型映射 HTTP 状态码，未列出的计费异常视为请求参数错误
BILLING_ERROR_STATUS = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (NoPendingDowngrade, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (PendingDowngradeExists, status.HTTP_409_CONFLICT),
    (InsufficientBalance, status.HTTP_402_PAYMENT_REQUIRED),
    (LedgerError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def billing_error_status(exc: BillingError) -> int:
    for error_class, status_code in BILLING_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时初始化数据库
    settings.validate_secrets()
    await init_db()
    yield


app = FastAPI(
    title="Panel Billing API",
    description="代理面板计费与套餐变更服务",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    status_code = billing_error_status(exc)
    if status_code >= 500:
        logger.error(f"Billing error: {exc.error_code} {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "message": exc.message,
            "code": status_code,
            "error_code": exc.error_code,
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": "error",
            "message": exc.detail,
            "code": exc.status_code
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "message": "Validation Error",
            "details": exc.errors(),
            "code": 422
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "status": "error",
            "message": "Internal Server Error",
            "code": 500
        },
    )


@app.middleware("http")
async def request_context_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    token = request_id_ctx_var.set(request_id)
    response = None
    start = time.perf_counter()
    if settings.metrics_enabled:
        IN_PROGRESS.inc()

    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        path = get_route_name(request.scope)
        status_code = response.status_code if response else 500
        if settings.metrics_enabled:
            REQUEST_COUNT.labels(request.method, path, str(status_code)).inc()
            REQUEST_LATENCY.labels(request.method, path).observe(duration)
            IN_PROGRESS.dec()
        request_id_ctx_var.reset(token)
        if response is not None:
            response.headers["X-Request-ID"] = request_id


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
)

# 所有 API 路由都在 /api/v1/ 前缀下
API_V1_PREFIX = "/api/v1"

app.include_router(plans.router, prefix=f"{API_V1_PREFIX}/plans", tags=["V1-套餐"])
app.include_router(balance.router, prefix=f"{API_V1_PREFIX}/balance", tags=["V1-余额"])
app.include_router(orders.router, prefix=f"{API_V1_PREFIX}/orders", tags=["V1-订单"])
app.include_router(plan_change.router, prefix=f"{API_V1_PREFIX}/plan-change", tags=["V1-套餐变更"])
app.include_router(admin.router, prefix=f"{API_V1_PREFIX}/admin", tags=["V1-管理后台"])


@app.get("/api/v1/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "ok",
        "service": "panel-billing",
        "version": "1.0.0",
        "api_version": "v1"
    }


@app.get("/metrics", dependencies=[Depends(verify_metrics_basic_auth)])
async def metrics():
    """Prometheus 指标端点（支持 Basic Auth 认证）"""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.setLevel(settings.log_level)
        logger.propagate = False


def init_sentry() -> None:
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[FastApiIntegration()],
            traces_sample_rate=settings.sentry_traces_sample_rate,
            profiles_sample_rate=settings.sentry_profiles_sample_rate,
        )


configure_logging()
init_sentry()
