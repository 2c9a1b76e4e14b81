"""项目文件树节点模型（文件与文件夹合并为一张表）。

存储规则：
- path：物化路径，由祖先名称以 '/' 连接而成，不以 '/' 开头或结尾，例如 "src"、"src/index.ts"；
- 同一项目内存活节点（is_deleted = false）的 path 唯一，由应用层保证；
- type：'file' 或 'folder'，创建后不可变；只有文件夹可以作为父节点；
- 文件内容：content（内联文本）与 storage_key（Blob 存储 key）二选一为准，
  通过 ``FileNode.body`` 以和类型（InlineBody | ExternalBody | EmptyBody）暴露；
- version：乐观并发版本号，每次行更新自增。
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.workspace.core.enums import NodeTypeEnum
from app.packages.workspace.models.base import AuditMixin, Base, SoftDeleteMixin, TimestampMixin


@dataclass(frozen=True)
class InlineBody:
    text: str


@dataclass(frozen=True)
class ExternalBody:
    key: str


@dataclass(frozen=True)
class EmptyBody:
    pass


NodeBody = Union[InlineBody, ExternalBody, EmptyBody]


def _new_id() -> str:
    return uuid.uuid4().hex


class FileNode(AuditMixin, TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(255))
    type: Mapped[str] = mapped_column(String(16))
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    path: Mapped[str] = mapped_column(String(1024))
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(String(1100), nullable=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)

    __table_args__ = (
        Index("ix_files_project_path", "project_id", "path"),
        Index("ix_files_project_parent", "project_id", "parent_id"),
    )

    @property
    def is_folder(self) -> bool:
        return self.type == NodeTypeEnum.FOLDER.value

    @property
    def is_file(self) -> bool:
        return self.type == NodeTypeEnum.FILE.value

    @property
    def body(self) -> NodeBody:
        # 内联内容优先，与历史数据的读取顺序一致
        if self.content:
            return InlineBody(self.content)
        if self.storage_key:
            return ExternalBody(self.storage_key)
        return EmptyBody()

    def __repr__(self) -> str:
        return f"<FileNode id={self.id} type={self.type} path={self.path!r} deleted={self.is_deleted}>"
