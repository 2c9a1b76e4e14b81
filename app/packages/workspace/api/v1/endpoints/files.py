"""项目文件树路由：列表、创建、重命名/移动、删除、内容读写与对账。

所有路由都先经过 ``require_project_access``：未认证返回 401，无权访问返回 404。
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.packages.workspace.api.v1.schemas.files import (
    FileContentBody,
    FileContentResponse,
    FileCreateBody,
    FileMutationResponse,
    FileNodeOut,
    FilesListResponse,
    FileUpdateBody,
    ReconcileResponse,
)
from app.packages.workspace.core.constants import HTTP_STATUS_CREATED
from app.packages.workspace.core.dependencies import get_db, get_file_tree_service, require_project_access
from app.packages.workspace.core.responses import create_response
from app.packages.workspace.core.security import Principal
from app.packages.workspace.models.file_node import FileNode
from app.packages.workspace.services.file_tree_service import UNSET, FileTreeService

router = APIRouter(prefix="/projects/{project_id}/files", tags=["files"])


def _serialize(node: FileNode) -> dict:
    # 存储 key 属于内部细节，不对外暴露
    return FileNodeOut.model_validate(node).model_dump(mode="json")


@router.get("", response_model=FilesListResponse)
def list_files(
    project_id: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    nodes = service.list_tree(db, project_id=project_id)
    return create_response("获取文件列表成功", {"files": [_serialize(n) for n in nodes]})


@router.post("", response_model=FileMutationResponse, status_code=HTTP_STATUS_CREATED)
def create_file(
    project_id: str,
    payload: FileCreateBody,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    node = service.create_node(
        db,
        project_id=project_id,
        name=payload.name,
        type=payload.type,
        parent_id=payload.parent_id,
        content=payload.content,
        principal_id=principal.id,
    )
    return create_response("创建成功", {"file": _serialize(node)}, HTTP_STATUS_CREATED)


@router.post("/reconcile", response_model=ReconcileResponse)
def reconcile_files(
    project_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    """修复漂移路径并清理无引用的 Blob，可安全重复执行。"""
    report = service.reconcile(db, project_id=project_id, principal_id=principal.id)
    return create_response("对账完成", report)


@router.patch("/{file_id}", response_model=FileMutationResponse)
def update_file(
    project_id: str,
    file_id: str,
    payload: FileUpdateBody,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    provided = payload.model_fields_set
    node = service.rename_or_move(
        db,
        project_id=project_id,
        id=file_id,
        name=payload.name if "name" in provided else UNSET,
        parent_id=payload.parent_id if "parent_id" in provided else UNSET,
        principal_id=principal.id,
    )
    return create_response("更新成功", {"file": _serialize(node)})


@router.delete("/{file_id}", response_model=FileMutationResponse)
def delete_file(
    project_id: str,
    file_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    deleted_path = service.delete_node(db, project_id=project_id, id=file_id, principal_id=principal.id)
    return create_response("删除成功", {"deletedPath": deleted_path})


@router.get("/{file_id}/content", response_model=FileContentResponse)
def read_file_content(
    project_id: str,
    file_id: str,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    content = service.read_content(db, project_id=project_id, id=file_id)
    return create_response("获取文件内容成功", {"content": content})


@router.put("/{file_id}/content", response_model=FileMutationResponse)
def write_file_content(
    project_id: str,
    file_id: str,
    payload: FileContentBody,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_project_access),
    service: FileTreeService = Depends(get_file_tree_service),
):
    node = service.write_content(
        db,
        project_id=project_id,
        id=file_id,
        content=payload.content,
        principal_id=principal.id,
    )
    return create_response("保存成功", {"file": _serialize(node)})
