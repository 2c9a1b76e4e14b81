"""项目访问守卫：判断已认证主体能否操作某个项目的文件树。

拒绝与“项目不存在”在响应上不做区分，避免泄露项目是否存在。
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.packages.workspace.core.security import Principal
from app.packages.workspace.crud.base import store_call
from app.packages.workspace.models.project import Project, WorkspaceMember

PROJECT_ACCESS_DENIED_MSG = "Project not found or access denied"


class AccessGuard:
    def can_access(self, db: Session, *, principal: Principal, project_id: str) -> bool:
        raise NotImplementedError


class MembershipAccessGuard(AccessGuard):
    """项目存活且主体是其所属工作区的成员时放行。"""

    def can_access(self, db: Session, *, principal: Principal, project_id: str) -> bool:
        stmt = (
            select(Project.id)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Project.workspace_id)
            .where(
                Project.id == project_id,
                Project.is_deleted.is_(False),
                WorkspaceMember.user_id == principal.id,
            )
            .limit(1)
        )
        with store_call(db, "check_project_access"):
            return db.execute(stmt).first() is not None


access_guard = MembershipAccessGuard()
