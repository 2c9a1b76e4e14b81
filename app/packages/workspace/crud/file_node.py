"""FileNode CRUD：文件树的元数据存储适配层。

所有方法都限定在单个项目内。每次写入都是单行（或单条语句）的原子操作并立即提交；
跨行的一致性（级联路径更新、冲突检查）由 ``FileTreeService`` 负责。
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.packages.workspace.core.exceptions import ConflictError, NotFoundError
from app.packages.workspace.crud.base import CRUDBase, store_call
from app.packages.workspace.models.file_node import FileNode


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CRUDFileNode(CRUDBase[FileNode]):
    def find_node(self, db: Session, *, project_id: str, id: str) -> FileNode | None:
        with store_call(db, "get_node"):
            return (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.id == id)
                .first()
            )

    def get_node(self, db: Session, *, project_id: str, id: str, not_found_msg: str = "文件不存在") -> FileNode:
        node = self.find_node(db, project_id=project_id, id=id)
        if node is None:
            raise NotFoundError(not_found_msg)
        return node

    def get_by_path(
        self,
        db: Session,
        *,
        project_id: str,
        path: str,
        exclude_id: Optional[str] = None,
    ) -> FileNode | None:
        with store_call(db, "get_by_path"):
            query = (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.path == path)
            )
            if exclude_id is not None:
                query = query.filter(FileNode.id != exclude_id)
            return query.first()

    def find_by_storage_key(
        self,
        db: Session,
        *,
        project_id: str,
        storage_key: str,
        exclude_id: Optional[str] = None,
    ) -> FileNode | None:
        with store_call(db, "get_by_storage_key"):
            query = (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.storage_key == storage_key)
            )
            if exclude_id is not None:
                query = query.filter(FileNode.id != exclude_id)
            return query.first()

    def has_storage_key_under(
        self,
        db: Session,
        *,
        project_id: str,
        key_prefix: str,
        exclude_id: Optional[str] = None,
    ) -> bool:
        """是否有存活节点的 key 位于 ``key_prefix + "/"`` 之下（即 ``key_prefix`` 在存储中是目录）。"""
        prefix = key_prefix + "/"
        with store_call(db, "has_storage_key_under"):
            query = (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.storage_key.like(escape_like(key_prefix) + "/%", escape="\\"))
            )
            if exclude_id is not None:
                query = query.filter(FileNode.id != exclude_id)
            keys = [row.storage_key for row in query.all()]
        return any(key.startswith(prefix) for key in keys)

    def list_descendants(self, db: Session, *, project_id: str, path_prefix: str) -> list[FileNode]:
        """返回路径以 ``path_prefix + "/"`` 开头的全部存活节点（按路径排序，父先于子）。"""
        prefix = path_prefix + "/"
        with store_call(db, "list_descendants"):
            rows = (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.path.like(escape_like(path_prefix) + "/%", escape="\\"))
                .order_by(FileNode.path)
                .all()
            )
        # 部分数据库的 LIKE 不区分大小写，这里按字节精确复核前缀
        return [row for row in rows if row.path.startswith(prefix)]

    def list_live(self, db: Session, *, project_id: str) -> list[FileNode]:
        with store_call(db, "list_live"):
            return (
                self.query(db)
                .filter(FileNode.project_id == project_id)
                .order_by(FileNode.path)
                .all()
            )

    def insert(self, db: Session, fields: dict[str, Any]) -> FileNode:
        return self.create(db, fields)

    def update_fields(
        self,
        db: Session,
        *,
        project_id: str,
        id: str,
        fields: dict[str, Any],
        expected_version: Optional[int] = None,
        live_only: bool = True,
    ) -> FileNode:
        """单行条件更新并自增 version。

        - 行不存在（或 ``live_only`` 时已被软删除）：``NotFoundError``；
        - 提供了 ``expected_version`` 且不匹配：``ConflictError``，调用方需重新读取后重试。
        """
        stmt = update(FileNode).where(FileNode.project_id == project_id, FileNode.id == id)
        if live_only:
            stmt = stmt.where(FileNode.is_deleted.is_(False))
        if expected_version is not None:
            stmt = stmt.where(FileNode.version == expected_version)
        stmt = stmt.values(**fields, version=FileNode.version + 1).execution_options(synchronize_session=False)

        with store_call(db, "update"):
            result = db.execute(stmt)
            db.commit()

        if result.rowcount == 0:
            if self.find_node(db, project_id=project_id, id=id) is None:
                raise NotFoundError("文件不存在")
            raise ConflictError("文件已被其他操作修改，请刷新后重试")

        with store_call(db, "reload"):
            return (
                self.query(db, include_deleted=True)
                .filter(FileNode.project_id == project_id)
                .filter(FileNode.id == id)
                .one()
            )

    def soft_delete_many(
        self,
        db: Session,
        *,
        project_id: str,
        ids: Iterable[str],
        updated_by: Optional[str] = None,
    ) -> int:
        """以单条语句为一组节点打上墓碑标记，返回实际更新的行数。"""
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        stmt = (
            update(FileNode)
            .where(FileNode.project_id == project_id)
            .where(FileNode.id.in_(id_list))
            .where(FileNode.is_deleted.is_(False))
            .values(is_deleted=True, updated_by=updated_by, version=FileNode.version + 1)
            .execution_options(synchronize_session=False)
        )
        with store_call(db, "soft_delete"):
            result = db.execute(stmt)
            db.commit()
        return result.rowcount


file_node_crud = CRUDFileNode(FileNode)
