"""异常处理模块：定义文件树的业务异常层级与统一响应格式。

所有业务异常都继承 ``AppException``（即 ``HTTPException``），由全局处理器渲染为
``{"msg", "data", "code"}`` 结构；``StoreUnavailableError`` 只暴露通用文案，
不会把存储 key 或后端错误细节返回给调用方。
"""

from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.packages.workspace.core.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_INTERNAL_SERVER_ERROR,
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_SERVICE_UNAVAILABLE,
    HTTP_STATUS_UNPROCESSABLE_ENTITY,
)
from app.packages.workspace.core.logger import logger


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = HTTP_STATUS_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data

    @property
    def msg(self) -> str:
        return str(self.detail)


class ValidationError(AppException):
    """输入非法（名称为空、类型错误、内容超限等），调用方必须修正输入，不应重试。"""

    def __init__(self, msg: str, data=None) -> None:
        super().__init__(msg, HTTP_STATUS_BAD_REQUEST, data)


class UnsupportedForFolderError(AppException):
    """对文件夹执行了仅文件支持的操作（读写内容）。"""

    def __init__(self, msg: str = "文件夹不支持读取或写入内容") -> None:
        super().__init__(msg, HTTP_STATUS_BAD_REQUEST)


class NotFoundError(AppException):
    """节点或父目录不存在/已删除；直接返回，不重试。"""

    def __init__(self, msg: str = "文件不存在") -> None:
        super().__init__(msg, HTTP_STATUS_NOT_FOUND)


class ConflictError(AppException):
    """路径冲突、移动到自身或子孙目录、并发修改等，调用方可换输入或刷新后重试。"""

    def __init__(self, msg: str) -> None:
        super().__init__(msg, HTTP_STATUS_CONFLICT)


class StoreUnavailableError(AppException):
    """元数据库或 Blob 存储的瞬时故障，可安全地整体重试。

    ``reason`` 仅用于日志，不会出现在响应中。
    """

    def __init__(self, reason: str = "", msg: str = "存储服务暂不可用，请稍后重试") -> None:
        super().__init__(msg, HTTP_STATUS_SERVICE_UNAVAILABLE)
        self.reason = reason


class BlobNotFoundError(Exception):
    """Blob 存储中不存在指定 key；仅在服务内部流转，不直接映射为响应。"""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 ``HTTPException`` 转换为统一响应格式。"""
    if isinstance(exc, StoreUnavailableError):
        logger.warning("Store unavailable on %s %s: %s", request.method, request.url.path, exc.reason)
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": HTTP_STATUS_INTERNAL_SERVER_ERROR,
    }
    return JSONResponse(status_code=HTTP_STATUS_INTERNAL_SERVER_ERROR, content=payload)


def _jsonable_errors(obj: Any) -> Any:
    if isinstance(obj, Exception):
        return str(obj)
    if isinstance(obj, dict):
        return {key: _jsonable_errors(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable_errors(item) for item in obj]
    return obj


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # pragma: no cover - framework glue
    """请求体/参数结构校验失败（pydantic 层面）统一返回 422 信封。"""
    payload = {
        "msg": "请求参数验证失败",
        "data": _jsonable_errors(exc.errors()),
        "code": HTTP_STATUS_UNPROCESSABLE_ENTITY,
    }
    return JSONResponse(status_code=HTTP_STATUS_UNPROCESSABLE_ENTITY, content=payload)
