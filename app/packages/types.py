"""业务包元数据定义。"""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

ExceptionHandler = Callable[[Request, Any], Awaitable[JSONResponse]]


@dataclass(frozen=True)
class AppPackage:
    """业务包向主应用暴露的接口：路由、配置、日志、数据库初始化与三类异常处理器。"""

    name: str
    api_router: APIRouter
    get_settings: Callable[[], Any]
    setup_logging: Callable[[], None]
    logger: Logger
    init_db: Callable[[], None]
    create_response: Callable[..., dict]
    http_exception_handler: ExceptionHandler
    validation_exception_handler: ExceptionHandler
    generic_exception_handler: ExceptionHandler
