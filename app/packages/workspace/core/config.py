"""配置模块：负责加载和缓存基于环境变量的应用设置。"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_project_root() -> Path:
    """返回最近一个包含 ``pyproject.toml`` 或 ``app/`` 的上级目录。"""
    here = Path(__file__).resolve()
    for parent in here.parents:
        if (parent / "pyproject.toml").is_file() or (parent / "app").is_dir():
            return parent
    return here.parent


BASE_DIR = _find_project_root()
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _load_if_exists(name: str, *, override: bool) -> bool:
    path = BASE_DIR / name
    if not path.is_file():
        return False
    load_dotenv(path, override=override, encoding="utf-8")
    return True


def _environment_file(environment: Optional[str]) -> Optional[str]:
    if not environment:
        debug = (os.getenv("DEBUG") or "").strip().lower()
        environment = "development" if debug in _TRUTHY else None
    if not environment:
        return None
    return environment if environment.startswith(".env") else f".env.{environment}"


def _load_environment() -> None:
    """``ENV_FILE`` 指定时只加载该文件；否则先 ``.env`` 再 ``.env.{ENVIRONMENT}``。"""
    explicit = os.getenv("ENV_FILE")
    if explicit:
        _load_if_exists(explicit, override=True)
        return
    # 基础 .env 不覆盖进程环境；环境专属文件覆盖基础值
    _load_if_exists(".env", override=False)
    env_specific = _environment_file(os.getenv("ENVIRONMENT"))
    if env_specific:
        _load_if_exists(env_specific, override=True)


_load_environment()


class Settings(BaseSettings):
    """
    文件树服务运行所需的全部配置项，每个字段都可以通过环境变量重写。
    元数据库、Blob 存储、事件总线与日志的连接参数都集中在这里。
    """

    project_name: str = Field(default="Project Files API", alias="PROJECT_NAME")
    api_v1_str: str = Field(default="/api/v1", alias="API_V1_STR")
    debug: bool = Field(default=False, alias="DEBUG")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="UTC", alias="TIMEZONE")

    # 元数据库（关系型存储）
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")
    database_host: str = Field(default="localhost", alias="DATABASE_HOST")
    database_port: int = Field(default=5432, alias="DATABASE_PORT")
    database_user: str = Field(default="postgres", alias="DATABASE_USER")
    database_password: str = Field(default="postgres", alias="DATABASE_PASSWORD")
    database_name: str = Field(default="project_files", alias="DATABASE_NAME")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    # 认证：仅负责校验外部签发的访问令牌
    jwt_secret_key: str = Field(default="changeme", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")

    # Blob 存储
    blob_backend: str = Field(default="LOCAL", alias="BLOB_BACKEND")
    blob_local_root: str = Field(default="storage/project-files", alias="BLOB_LOCAL_ROOT")
    s3_bucket: Optional[str] = Field(default=None, alias="S3_BUCKET")
    s3_region: Optional[str] = Field(default=None, alias="S3_REGION")
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key_id: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(default=None, alias="S3_SECRET_ACCESS_KEY")
    s3_key_prefix: str = Field(default="", alias="S3_KEY_PREFIX")

    # 单个文件内容上限（字节）
    file_max_content_bytes: int = Field(default=5 * 1024 * 1024, alias="FILE_MAX_CONTENT_BYTES")

    # 事件总线（Redis 列表），不可用时回退为进程内存
    event_bus_enabled: bool = Field(default=True, alias="EVENT_BUS_ENABLED")
    event_stream_key: str = Field(default="project-files:events", alias="EVENT_STREAM_KEY")
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="app.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    model_config = SettingsConfigDict(extra="ignore")

    @property
    def sql_database_url(self) -> str:
        """优先使用 DATABASE_URL，否则根据分项配置拼接 PostgreSQL 连接串。"""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def blob_local_root_path(self) -> Path:
        """本地 Blob 根目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.blob_local_root)

    @property
    def log_directory(self) -> Path:
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        return self.log_directory / self.log_file_name

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量。"""
    return Settings()
