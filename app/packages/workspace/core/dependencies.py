"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数。"""

from collections.abc import Generator
from typing import Optional

from fastapi import Depends, HTTPException, Path
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.packages.workspace.core.constants import ACCESS_TOKEN_TYPE, HTTP_STATUS_UNAUTHORIZED
from app.packages.workspace.core.exceptions import NotFoundError
from app.packages.workspace.core.guards import PROJECT_ACCESS_DENIED_MSG, AccessGuard, access_guard
from app.packages.workspace.core.logger import logger
from app.packages.workspace.core.security import Principal, decode_token, principal_from_payload
from app.packages.workspace.db import session as db_session
from app.packages.workspace.services.file_tree_service import FileTreeService, file_tree_service

security_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> Principal:
    """解析 ``Authorization`` 头部并返回当前认证主体，缺失或非法时抛出 401。"""
    if not credentials:
        raise HTTPException(status_code=HTTP_STATUS_UNAUTHORIZED, detail="缺少认证信息")

    if credentials.scheme.lower() != ACCESS_TOKEN_TYPE:
        raise HTTPException(status_code=HTTP_STATUS_UNAUTHORIZED, detail="认证类型无效")

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=HTTP_STATUS_UNAUTHORIZED, detail="Token 无效或已过期")

    principal = principal_from_payload(payload)
    if principal is None:
        raise HTTPException(status_code=HTTP_STATUS_UNAUTHORIZED, detail="Token 无效")
    return principal


def get_access_guard() -> AccessGuard:
    return access_guard


def get_file_tree_service() -> FileTreeService:
    return file_tree_service


def require_project_access(
    project_id: str = Path(...),
    principal: Principal = Depends(get_current_principal),
    guard: AccessGuard = Depends(get_access_guard),
    db: Session = Depends(get_db),
) -> Principal:
    """确认主体可访问路径中的项目；拒绝时与项目不存在一样返回 404。"""
    if not guard.can_access(db, principal=principal, project_id=project_id):
        logger.info(
            "Project access denied project=%s principal=%s", project_id, principal.id,
            extra={"project_id": project_id, "principal": principal.id},
        )
        raise NotFoundError(PROJECT_ACCESS_DENIED_MSG)
    return principal
