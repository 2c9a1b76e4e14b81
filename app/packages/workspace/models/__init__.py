"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.workspace.models.file_node import (
    EmptyBody,
    ExternalBody,
    FileNode,
    InlineBody,
    NodeBody,
)
from app.packages.workspace.models.project import Project, WorkspaceMember

__all__ = [
    "EmptyBody",
    "ExternalBody",
    "FileNode",
    "InlineBody",
    "NodeBody",
    "Project",
    "WorkspaceMember",
]
