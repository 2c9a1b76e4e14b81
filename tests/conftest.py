"""测试夹具：为 pytest 提供数据库、Blob 存储、事件总线与客户端的共享配置。"""

import os
import uuid
from typing import Generator, Iterable, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.packages.workspace.core.dependencies import get_db, get_file_tree_service
from app.packages.workspace.core.events import InMemoryEventBus
from app.packages.workspace.core.exceptions import StoreUnavailableError
from app.packages.workspace.core.security import create_access_token
from app.packages.workspace.db import session as db_session
from app.packages.workspace.db.init_db import init_db
from app.packages.workspace.models.base import Base
from app.packages.workspace.models.project import Project, WorkspaceMember
from app.packages.workspace.services.blob_store import BlobObject, BlobStore, LocalBlobStore
from app.packages.workspace.services.file_tree_service import FileTreeService

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

MEMBER_ID = "user-member"
OUTSIDER_ID = "user-outsider"


class FlakyBlobStore(BlobStore):
    """包装真实存储，按需注入故障。

    - ``fail_ops``：列出的操作名整体失败（抛出 ``StoreUnavailableError``）；
    - ``fail_move_sources``：仅当 move 的源 key 在集合中时失败。
    """

    def __init__(self, inner: BlobStore) -> None:
        self.inner = inner
        self.fail_ops: set[str] = set()
        self.fail_move_sources: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.fail_ops:
            raise StoreUnavailableError(f"injected {op} failure")

    def upload(self, key: str, data: bytes) -> None:
        self._check("upload")
        self.inner.upload(key, data)

    def download(self, key: str) -> bytes:
        self._check("download")
        return self.inner.download(key)

    def exists(self, key: str) -> bool:
        return self.inner.exists(key)

    def move(self, old_key: str, new_key: str) -> None:
        self._check("move")
        if old_key in self.fail_move_sources:
            raise StoreUnavailableError(f"injected move failure for {old_key}")
        self.inner.move(old_key, new_key)

    def remove_many(self, keys: Iterable[str]) -> List[str]:
        keys = list(keys)
        if "remove_many" in self.fail_ops:
            return keys
        return self.inner.remove_many(keys)

    def list_objects(self, prefix: str) -> List[BlobObject]:
        return self.inner.list_objects(prefix)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    init_db()
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def project_id(db_session_fixture: Session) -> str:
    """每个用例一个新项目，成员为 ``MEMBER_ID``。"""
    workspace_id = uuid.uuid4().hex
    project = Project(workspace_id=workspace_id, name="demo")
    db_session_fixture.add(project)
    db_session_fixture.add(WorkspaceMember(workspace_id=workspace_id, user_id=MEMBER_ID))
    db_session_fixture.commit()
    return project.id


@pytest.fixture()
def blob_store(tmp_path) -> FlakyBlobStore:
    return FlakyBlobStore(LocalBlobStore(tmp_path / "blobs"))


@pytest.fixture()
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
def service(blob_store: FlakyBlobStore, event_bus: InMemoryEventBus) -> FileTreeService:
    return FileTreeService(blob_store=blob_store, event_bus=event_bus, max_content_bytes=1024)


@pytest.fixture()
def client(service: FileTreeService):
    """构建 FastAPI TestClient，并注入测试专用的数据库与文件树服务依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_tree_service] = lambda: service

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def bearer(subject: str) -> dict[str, str]:
    token = create_access_token({"sub": subject})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def member_headers() -> dict[str, str]:
    return bearer(MEMBER_ID)


@pytest.fixture()
def outsider_headers() -> dict[str, str]:
    return bearer(OUTSIDER_ID)
