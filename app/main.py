"""应用入口：根据启用的业务包组装 FastAPI 实例。"""

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.middleware.request_id import RequestIdMiddleware
from app.packages import get_active_package
from app.packages.types import AppPackage


def create_app(package: AppPackage) -> FastAPI:
    """挂载中间件、异常处理器、健康检查与版本化路由。"""
    package.setup_logging()
    settings = package.get_settings()
    logger = package.logger

    application = FastAPI(title=settings.project_name, debug=settings.debug)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    application.add_middleware(RequestIdMiddleware)

    # 业务异常（含 401/404/409/503）、请求校验失败与兜底异常都渲染为统一信封
    application.add_exception_handler(HTTPException, package.http_exception_handler)
    application.add_exception_handler(RequestValidationError, package.validation_exception_handler)
    application.add_exception_handler(Exception, package.generic_exception_handler)

    @application.on_event("startup")
    async def startup_event() -> None:
        """初始化数据库状态，确认服务可用后输出成功日志。"""
        package.init_db()
        logger.info("SUCCESS - Application running at http://127.0.0.1:%s", settings.app_port)

    @application.get("/health")
    async def health_check() -> dict:
        """提供健康检查接口，便于编排器与监控系统探活。"""
        return package.create_response("OK", {"status": "healthy"})

    application.include_router(package.api_router, prefix=settings.api_v1_str)
    return application


app = create_app(get_active_package())
