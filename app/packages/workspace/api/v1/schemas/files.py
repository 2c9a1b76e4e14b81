"""项目文件树 - 请求/响应模型。"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.packages.workspace.api.v1.schemas.common import ResponseEnvelope


class FileCreateBody(BaseModel):
    # name/type 的具体校验交给服务层，保证 HTTP 与直接调用的错误一致（400 而非 422）
    name: Any = None
    type: Any = None
    parent_id: Optional[str] = None
    content: Optional[str] = None


class FileUpdateBody(BaseModel):
    """重命名/移动请求；``parent_id`` 显式传 null 表示移动到根目录。"""

    name: Optional[str] = None
    parent_id: Optional[str] = None


class FileContentBody(BaseModel):
    content: Any = None


class FileNodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: str
    parent_id: Optional[str] = None
    path: str
    size_bytes: Optional[int] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReconcileReport(BaseModel):
    paths_fixed: int = 0
    conflicts: list[str] = Field(default_factory=list)
    orphans: list[str] = Field(default_factory=list)
    blobs_removed: int = 0
    blobs_failed: int = 0


FilesListResponse = ResponseEnvelope[dict]
FileMutationResponse = ResponseEnvelope[dict]
FileContentResponse = ResponseEnvelope[dict]
ReconcileResponse = ResponseEnvelope[ReconcileReport]
