"""项目文件树服务：编排创建/重命名/移动/删除/读写内容，保证元数据与 Blob 一致。

一致性规则：
- 任何校验都在第一次写入之前完成，失败时没有副作用；
- 节点自身的 path 变化必须与其 Blob 位置同时成立：单文件 Blob 移动失败会回滚元数据；
- 文件夹级联移动/删除中的 Blob 失败只记日志并投递事件，元数据（path、is_deleted）始终以数据库为准；
- 服务不跨调用缓存节点状态，每次变更前都重新读取；行更新携带 version 做乐观并发校验。
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.packages.workspace.core.config import get_settings
from app.packages.workspace.core.constants import (
    EVENT_BLOB_CLEANUP_REQUESTED,
    EVENT_BLOB_RELOCATION_FAILED,
    EVENT_FILE_CONTENT_WRITTEN,
    EVENT_FILE_CREATED,
    EVENT_FILE_DELETED,
    EVENT_FILE_MOVED,
    MAX_PATH_LENGTH,
)
from app.packages.workspace.core.enums import NodeTypeEnum
from app.packages.workspace.core.events import EventBus, build_event_bus
from app.packages.workspace.core.exceptions import (
    BlobNotFoundError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    UnsupportedForFolderError,
    ValidationError,
)
from app.packages.workspace.core.logger import logger
from app.packages.workspace.crud.file_node import file_node_crud
from app.packages.workspace.models.file_node import ExternalBody, FileNode, InlineBody
from app.packages.workspace.services.blob_store import BlobStore, build_blob_store
from app.packages.workspace.utils.path_utils import (
    blob_key_for,
    blob_prefix_for,
    ensure_path_length,
    is_same_or_descendant,
    materialize,
    normalize_name,
    rebase_path,
)

# 区分“未传入”与“显式传入 None”（移动到根目录）
UNSET: Any = object()

# 对账时跳过最近写入的对象，避免误删“已上传、尚未入库”的新文件
DEFAULT_GC_GRACE = timedelta(minutes=10)


class FileTreeService:
    def __init__(
        self,
        blob_store: Optional[BlobStore] = None,
        event_bus: Optional[EventBus] = None,
        *,
        max_content_bytes: Optional[int] = None,
    ) -> None:
        self._blob_store = blob_store
        self._event_bus = event_bus
        self._max_content_bytes = max_content_bytes

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = build_blob_store()
        return self._blob_store

    @property
    def event_bus(self) -> EventBus:
        if self._event_bus is None:
            self._event_bus = build_event_bus()
        return self._event_bus

    @property
    def max_content_bytes(self) -> int:
        if self._max_content_bytes is None:
            return get_settings().file_max_content_bytes
        return self._max_content_bytes

    # ----------------------------
    # 查询
    # ----------------------------
    def list_tree(self, db: Session, *, project_id: str) -> List[FileNode]:
        return file_node_crud.list_live(db, project_id=project_id)

    # ----------------------------
    # 创建
    # ----------------------------
    def create_node(
        self,
        db: Session,
        *,
        project_id: str,
        name: Any,
        type: Any,
        parent_id: Optional[str] = None,
        content: Optional[str] = None,
        principal_id: Optional[str] = None,
    ) -> FileNode:
        """创建文件或文件夹；要么得到一个完整的存活节点，要么什么都不留下。"""
        node_type = self._validate_type(type)
        trimmed = normalize_name(name)
        if node_type is NodeTypeEnum.FOLDER and content not in (None, ""):
            raise ValidationError("文件夹不能包含内容")
        data = self._encode_content(content) if node_type is NodeTypeEnum.FILE else b""

        parent_path: Optional[str] = None
        if parent_id:
            parent = file_node_crud.find_node(db, project_id=project_id, id=parent_id)
            if parent is None or not parent.is_folder:
                raise NotFoundError("父文件夹不存在")
            parent_path = parent.path

        path = ensure_path_length(materialize(parent_path, trimmed))
        if file_node_crud.get_by_path(db, project_id=project_id, path=path) is not None:
            raise ConflictError("同名文件或文件夹已存在")

        storage_key: Optional[str] = None
        if data:
            storage_key = self._allocate_blob_key(db, project_id=project_id, path=path)
            # 上传失败直接抛出，此时尚未写入任何行
            self.blob_store.upload(storage_key, data)

        try:
            node = file_node_crud.insert(
                db,
                {
                    "project_id": project_id,
                    "name": trimmed,
                    "type": node_type.value,
                    "parent_id": parent_id or None,
                    "path": path,
                    "content": None,
                    "storage_key": storage_key,
                    "size_bytes": len(data) if node_type is NodeTypeEnum.FILE else None,
                    "created_by": principal_id,
                    "updated_by": principal_id,
                },
            )
        except StoreUnavailableError:
            if storage_key:
                self._remove_blobs(project_id, [storage_key], reason="create_aborted")
            raise

        logger.info(
            "files.create project=%s id=%s type=%s path=%s",
            project_id, node.id, node.type, node.path,
            extra={"project_id": project_id, "node_id": node.id},
        )
        self.event_bus.publish(
            EVENT_FILE_CREATED,
            project_id,
            {"id": node.id, "path": node.path, "type": node.type},
        )
        return node

    # ----------------------------
    # 重命名 / 移动
    # ----------------------------
    def rename_or_move(
        self,
        db: Session,
        *,
        project_id: str,
        id: str,
        name: Any = UNSET,
        parent_id: Any = UNSET,
        principal_id: Optional[str] = None,
    ) -> FileNode:
        """修改名称和/或父目录，并把新路径级联到全部子孙节点。

        ``parent_id`` 不传表示保持不变，传 ``None`` 表示移动到根目录；
        ``name`` 不传或为 ``None`` 表示保持原名。
        """
        if name is UNSET and parent_id is UNSET:
            raise ValidationError("name 或 parent_id 至少需要提供一个")

        node = file_node_crud.get_node(db, project_id=project_id, id=id)
        trimmed = node.name if name is UNSET or name is None else normalize_name(name)

        target_parent_id = node.parent_id if parent_id is UNSET else (parent_id or None)
        if target_parent_id == node.id:
            raise ConflictError("不能将文件夹移动到自身")

        new_parent_path: Optional[str] = None
        if target_parent_id:
            parent = file_node_crud.find_node(db, project_id=project_id, id=target_parent_id)
            if parent is None or not parent.is_folder:
                raise NotFoundError("父文件夹不存在")
            new_parent_path = parent.path

        old_path = node.path
        if node.is_folder and new_parent_path is not None and is_same_or_descendant(new_parent_path, old_path):
            raise ConflictError("不能将文件夹移动到其子目录中")

        new_path = ensure_path_length(materialize(new_parent_path, trimmed))
        if new_path == old_path and target_parent_id == node.parent_id and trimmed == node.name:
            return node

        if node.is_folder and new_path != old_path and len(new_path) > len(old_path):
            self._ensure_cascade_fits(db, project_id=project_id, old_path=old_path, new_path=new_path)

        # 写入前立即用最新读取做冲突检查，缩小并发窗口
        if file_node_crud.get_by_path(db, project_id=project_id, path=new_path, exclude_id=node.id) is not None:
            raise ConflictError("同名文件或文件夹已存在")

        # 行更新提交后实例会被刷新为新值，补偿所需的原始位置必须先留存
        original = {
            "name": node.name,
            "parent_id": node.parent_id,
            "path": old_path,
            "updated_by": node.updated_by,
        }
        old_key = node.storage_key
        updated = file_node_crud.update_fields(
            db,
            project_id=project_id,
            id=node.id,
            fields={"name": trimmed, "parent_id": target_parent_id, "path": new_path, "updated_by": principal_id},
            expected_version=node.version,
        )

        if old_key and new_path != old_path:
            updated = self._relocate_node_blob(
                db, project_id=project_id, node_id=node.id, old_key=old_key, new_path=new_path, original=original
            )

        descendants_moved = 0
        relocation_failures: list[str] = []
        if node.is_folder and new_path != old_path:
            descendants_moved, relocation_failures = self._cascade_paths(
                db,
                project_id=project_id,
                old_path=old_path,
                new_path=new_path,
                principal_id=principal_id,
            )

        logger.info(
            "files.move project=%s id=%s %s -> %s descendants=%s relocation_failures=%s",
            project_id, node.id, old_path, new_path, descendants_moved, len(relocation_failures),
            extra={"project_id": project_id, "node_id": node.id},
        )
        self.event_bus.publish(
            EVENT_FILE_MOVED,
            project_id,
            {"id": node.id, "old_path": old_path, "new_path": new_path, "descendants": descendants_moved},
        )
        if relocation_failures:
            self.event_bus.publish(EVENT_BLOB_RELOCATION_FAILED, project_id, {"ids": relocation_failures})
        return updated

    def _relocate_node_blob(
        self,
        db: Session,
        *,
        project_id: str,
        node_id: str,
        old_key: str,
        new_path: str,
        original: Dict[str, Any],
    ) -> FileNode:
        """移动单个文件的 Blob；失败时把元数据补偿回原路径并抛出。"""
        new_key = self._allocate_blob_key(db, project_id=project_id, path=new_path, exclude_id=node_id)
        try:
            self._relocate_blob(old_key, new_key)
        except (StoreUnavailableError, BlobNotFoundError) as exc:
            logger.error(
                "files.move blob relocation failed, rolling back project=%s id=%s",
                project_id, node_id, exc_info=True,
                extra={"project_id": project_id, "node_id": node_id},
            )
            self._restore_location(db, project_id=project_id, node_id=node_id, original=original)
            raise StoreUnavailableError(f"blob move {old_key} -> {new_key} failed") from exc

        try:
            return file_node_crud.update_fields(
                db,
                project_id=project_id,
                id=node_id,
                fields={"storage_key": new_key},
                live_only=False,
            )
        except StoreUnavailableError:
            # 记录新 key 失败：把 Blob 移回原处，再恢复元数据，保持两边一致
            try:
                self.blob_store.move(new_key, old_key)
            except (StoreUnavailableError, BlobNotFoundError):
                logger.error("files.move could not move blob back: %s", new_key, exc_info=True)
            self._restore_location(db, project_id=project_id, node_id=node_id, original=original)
            raise

    def _restore_location(self, db: Session, *, project_id: str, node_id: str, original: Dict[str, Any]) -> None:
        try:
            file_node_crud.update_fields(db, project_id=project_id, id=node_id, fields=original, live_only=False)
        except (StoreUnavailableError, NotFoundError):
            logger.critical(
                "files.move rollback failed, metadata needs reconciliation project=%s id=%s",
                project_id, node_id, exc_info=True,
                extra={"project_id": project_id, "node_id": node_id},
            )

    def _cascade_paths(
        self,
        db: Session,
        *,
        project_id: str,
        old_path: str,
        new_path: str,
        principal_id: Optional[str],
    ) -> tuple[int, list[str]]:
        """把 old_path 下全部存活子孙改写到 new_path；Blob 失败不打断级联。"""
        moved = 0
        failures: list[str] = []
        for child in file_node_crud.list_descendants(db, project_id=project_id, path_prefix=old_path):
            child_path = rebase_path(child.path, old_path, new_path)
            fields: Dict[str, Any] = {"path": child_path, "updated_by": principal_id}
            if child.storage_key:
                child_key = self._allocate_blob_key(db, project_id=project_id, path=child_path, exclude_id=child.id)
                try:
                    self._relocate_blob(child.storage_key, child_key)
                    fields["storage_key"] = child_key
                except (StoreUnavailableError, BlobNotFoundError):
                    # 旧 key 仍然可读，留给对账任务处理
                    logger.warning(
                        "files.move descendant blob relocation failed project=%s id=%s key=%s",
                        project_id, child.id, child.storage_key, exc_info=True,
                        extra={"project_id": project_id, "node_id": child.id},
                    )
                    failures.append(child.id)
            try:
                file_node_crud.update_fields(db, project_id=project_id, id=child.id, fields=fields)
            except NotFoundError:
                logger.info("files.move descendant vanished during cascade project=%s id=%s", project_id, child.id)
                continue
            moved += 1
        return moved, failures

    def _ensure_cascade_fits(self, db: Session, *, project_id: str, old_path: str, new_path: str) -> None:
        growth = len(new_path) - len(old_path)
        for child in file_node_crud.list_descendants(db, project_id=project_id, path_prefix=old_path):
            if len(child.path) + growth > MAX_PATH_LENGTH:
                raise ValidationError(f"移动后子路径长度将超过 {MAX_PATH_LENGTH} 个字符")

    # ----------------------------
    # 删除
    # ----------------------------
    def delete_node(
        self,
        db: Session,
        *,
        project_id: str,
        id: str,
        principal_id: Optional[str] = None,
    ) -> str:
        """软删除节点及其全部存活子孙，返回被删除的路径。Blob 清理为尽力而为。"""
        node = file_node_crud.get_node(db, project_id=project_id, id=id)

        doomed: list[FileNode] = [node]
        if node.is_folder:
            doomed.extend(file_node_crud.list_descendants(db, project_id=project_id, path_prefix=node.path))

        # 节点与子孙在同一条语句中打墓碑，调用方看到的是原子删除
        deleted = file_node_crud.soft_delete_many(
            db, project_id=project_id, ids=[n.id for n in doomed], updated_by=principal_id
        )
        if deleted == 0:
            raise NotFoundError("文件不存在")

        if node.is_folder:
            # 扫描之后并发创建到该目录下的节点，再补扫一次
            stragglers = file_node_crud.list_descendants(db, project_id=project_id, path_prefix=node.path)
            if stragglers:
                file_node_crud.soft_delete_many(
                    db, project_id=project_id, ids=[n.id for n in stragglers], updated_by=principal_id
                )
                doomed.extend(stragglers)

        keys = [n.storage_key for n in doomed if n.storage_key]
        failed = self._remove_blobs(project_id, keys, reason="delete") if keys else []

        logger.info(
            "files.delete project=%s id=%s path=%s nodes=%s blobs=%s blob_failures=%s",
            project_id, node.id, node.path, len(doomed), len(keys), len(failed),
            extra={"project_id": project_id, "node_id": node.id},
        )
        self.event_bus.publish(
            EVENT_FILE_DELETED,
            project_id,
            {"id": node.id, "path": node.path, "ids": [n.id for n in doomed]},
        )
        return node.path

    # ----------------------------
    # 内容读写
    # ----------------------------
    def read_content(self, db: Session, *, project_id: str, id: str) -> str:
        node = file_node_crud.get_node(db, project_id=project_id, id=id)
        if node.is_folder:
            raise UnsupportedForFolderError("文件夹不支持读取内容")

        body = node.body
        if isinstance(body, InlineBody):
            return body.text
        if isinstance(body, ExternalBody):
            try:
                data = self.blob_store.download(body.key)
            except BlobNotFoundError as exc:
                logger.error(
                    "files.read blob missing project=%s id=%s", project_id, node.id,
                    extra={"project_id": project_id, "node_id": node.id},
                )
                raise StoreUnavailableError(f"blob missing: {body.key}") from exc
            return data.decode("utf-8", errors="replace")
        return ""

    def write_content(
        self,
        db: Session,
        *,
        project_id: str,
        id: str,
        content: Any,
        principal_id: Optional[str] = None,
    ) -> FileNode:
        """把内容写入 Blob（原地覆盖或新分配 key），成功后再更新行的 size 并清空内联内容。"""
        if not isinstance(content, str):
            raise ValidationError("content 必须为字符串")
        data = self._encode_content(content)

        node = file_node_crud.get_node(db, project_id=project_id, id=id)
        if node.is_folder:
            raise UnsupportedForFolderError("文件夹不支持写入内容")

        key = node.storage_key or self._allocate_blob_key(db, project_id=project_id, path=node.path, exclude_id=node.id)
        self.blob_store.upload(key, data)

        updated = file_node_crud.update_fields(
            db,
            project_id=project_id,
            id=node.id,
            fields={"storage_key": key, "size_bytes": len(data), "content": None, "updated_by": principal_id},
            expected_version=node.version,
        )
        logger.info(
            "files.write project=%s id=%s bytes=%s",
            project_id, node.id, len(data),
            extra={"project_id": project_id, "node_id": node.id},
        )
        self.event_bus.publish(EVENT_FILE_CONTENT_WRITTEN, project_id, {"id": node.id, "size_bytes": len(data)})
        return updated

    # ----------------------------
    # 对账
    # ----------------------------
    def reconcile(
        self,
        db: Session,
        *,
        project_id: str,
        gc_grace: timedelta = DEFAULT_GC_GRACE,
        principal_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """修复漂移的物化路径，并清理没有任何存活节点引用的 Blob。

        - 自根节点沿 parent_id 自上而下重算 path；父节点不存活（或成环）的节点只报告不修改；
        - 期望路径已被其他节点占用时跳过并报告冲突；
        - 仅删除早于 ``gc_grace`` 的未引用对象。
        """
        nodes = file_node_crud.list_live(db, project_id=project_id)
        by_id = {n.id: n for n in nodes}
        children: Dict[Optional[str], List[FileNode]] = defaultdict(list)
        for n in nodes:
            parent = by_id.get(n.parent_id) if n.parent_id else None
            if n.parent_id and (parent is None or not parent.is_folder):
                continue
            children[n.parent_id].append(n)

        paths_fixed = 0
        conflicts: list[str] = []
        reached: set[str] = set()
        stack: list[tuple[Optional[str], FileNode]] = [(None, n) for n in children[None]]
        while stack:
            parent_path, current = stack.pop()
            reached.add(current.id)
            expected = materialize(parent_path, current.name)
            effective = current.path
            if current.path != expected:
                occupant = file_node_crud.get_by_path(db, project_id=project_id, path=expected, exclude_id=current.id)
                if occupant is not None:
                    conflicts.append(current.id)
                else:
                    try:
                        file_node_crud.update_fields(
                            db,
                            project_id=project_id,
                            id=current.id,
                            fields={"path": expected, "updated_by": principal_id},
                            expected_version=current.version,
                        )
                        effective = expected
                        paths_fixed += 1
                    except (ConflictError, NotFoundError):
                        conflicts.append(current.id)
            if current.is_folder:
                stack.extend((effective, child) for child in children.get(current.id, []))

        orphans = sorted(n.id for n in nodes if n.id not in reached)

        # 先列对象再读引用：列出之后入库的新节点也会被计入引用
        objects = self.blob_store.list_objects(blob_prefix_for(project_id))
        referenced = {n.storage_key for n in file_node_crud.list_live(db, project_id=project_id) if n.storage_key}
        cutoff = datetime.now(timezone.utc) - gc_grace
        garbage = [
            obj.key
            for obj in objects
            if obj.key not in referenced and (obj.last_modified is None or obj.last_modified <= cutoff)
        ]
        failed = self.blob_store.remove_many(garbage) if garbage else []

        report = {
            "paths_fixed": paths_fixed,
            "conflicts": conflicts,
            "orphans": orphans,
            "blobs_removed": len(garbage) - len(failed),
            "blobs_failed": len(failed),
        }
        logger.info("files.reconcile project=%s report=%s", project_id, report, extra={"project_id": project_id})
        return report

    # ----------------------------
    # 内部辅助
    # ----------------------------
    @staticmethod
    def _validate_type(value: Any) -> NodeTypeEnum:
        try:
            return NodeTypeEnum(value)
        except ValueError as exc:
            raise ValidationError("type 必须为 file 或 folder") from exc

    def _encode_content(self, content: Optional[str]) -> bytes:
        if content is None:
            return b""
        if not isinstance(content, str):
            raise ValidationError("content 必须为字符串")
        try:
            data = content.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise ValidationError("content 必须为合法的 UTF-8 文本") from exc
        if len(data) > self.max_content_bytes:
            raise ValidationError(f"文件内容不能超过 {self.max_content_bytes} 字节")
        return data

    def _allocate_blob_key(
        self,
        db: Session,
        *,
        project_id: str,
        path: str,
        exclude_id: Optional[str] = None,
    ) -> str:
        """按路径派生 Blob key。

        级联移动失败会让存活节点停留在旧 key 上：若派生 key 正被其他节点引用，
        或是其他节点 key 的上级目录，追加随机后缀。
        """
        key = blob_key_for(project_id, path)
        holder = file_node_crud.find_by_storage_key(db, project_id=project_id, storage_key=key, exclude_id=exclude_id)
        if holder is None and not file_node_crud.has_storage_key_under(
            db, project_id=project_id, key_prefix=key, exclude_id=exclude_id
        ):
            return key
        return f"{key}.~{uuid.uuid4().hex[:8]}"

    def _relocate_blob(self, old_key: str, new_key: str) -> None:
        if old_key == new_key:
            return
        try:
            self.blob_store.move(old_key, new_key)
        except BlobNotFoundError:
            # 上一次尝试已经移动成功（源不存在但目标已就位），视为完成
            if self.blob_store.exists(new_key):
                return
            raise

    def _remove_blobs(self, project_id: str, keys: List[str], *, reason: str) -> List[str]:
        failed = self.blob_store.remove_many(keys)
        if failed:
            logger.warning(
                "files.blob_cleanup deferred project=%s reason=%s keys=%s",
                project_id, reason, len(failed),
                extra={"project_id": project_id},
            )
            # 这些 key 之后可能被同路径的新节点复用，消费者删除前必须确认仍无存活引用
            self.event_bus.publish(
                EVENT_BLOB_CLEANUP_REQUESTED,
                project_id,
                {"keys": failed, "reason": reason, "verify_unreferenced": True},
            )
        return failed


file_tree_service = FileTreeService()
