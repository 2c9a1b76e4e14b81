"""枚举定义：约束节点类型与存储后端类型的可选值。"""

from enum import Enum


class NodeTypeEnum(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class BlobBackendEnum(str, Enum):
    """Blob 存储后端类型。"""

    LOCAL = "LOCAL"
    S3 = "S3"


class MemberRoleEnum(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"
