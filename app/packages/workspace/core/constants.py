"""常量定义：集中维护 HTTP 状态码与文件树相关的边界值。"""

HTTP_STATUS_OK = 200
HTTP_STATUS_CREATED = 201
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_UNAUTHORIZED = 401
HTTP_STATUS_NOT_FOUND = 404
HTTP_STATUS_CONFLICT = 409
HTTP_STATUS_INTERNAL_SERVER_ERROR = 500
HTTP_STATUS_SERVICE_UNAVAILABLE = 503
HTTP_STATUS_UNPROCESSABLE_ENTITY = 422

ACCESS_TOKEN_TYPE = "bearer"

# 与 files 表列宽保持一致
MAX_NAME_LENGTH = 255
MAX_PATH_LENGTH = 1024

# 保留名：不允许作为节点名，避免路径语义歧义
RESERVED_NAMES = frozenset({".", ".."})

# 事件名称（事件总线）
EVENT_FILE_CREATED = "file.created"
EVENT_FILE_MOVED = "file.moved"
EVENT_FILE_DELETED = "file.deleted"
EVENT_FILE_CONTENT_WRITTEN = "file.content_written"
EVENT_BLOB_CLEANUP_REQUESTED = "blob.cleanup_requested"
EVENT_BLOB_RELOCATION_FAILED = "blob.relocation_failed"

# 进程内事件总线最多保留的事件数，超出后丢弃最旧的
IN_MEMORY_EVENT_LIMIT = 1000
