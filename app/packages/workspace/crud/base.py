"""CRUD 基类：为各实体提供通用的数据访问方法，并把数据库故障统一转换为业务异常。"""

from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterator, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from app.packages.workspace.core.exceptions import StoreUnavailableError
from app.packages.workspace.core.logger import logger
from app.packages.workspace.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


@contextmanager
def store_call(db: Session, action: str) -> Iterator[None]:
    """包裹一次元数据库调用：任何 SQLAlchemy 异常都回滚会话并转换为 ``StoreUnavailableError``。"""
    try:
        yield
    except SQLAlchemyError as exc:
        try:
            db.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after failed %s also failed", action, exc_info=True)
        logger.warning("Metadata store call failed: %s", action, exc_info=True)
        raise StoreUnavailableError(f"{action}: {exc}") from exc


class CRUDBase(Generic[ModelType]):
    """封装带软删除过滤的查询与创建逻辑，减少重复代码。"""

    def __init__(self, model: Type[ModelType]):
        self.model = model

    def create(self, db: Session, obj_in: Dict[str, Any]) -> ModelType:
        db_obj = self.model(**obj_in)
        with store_call(db, f"insert {self.model.__tablename__}"):
            db.add(db_obj)
            db.commit()
            db.refresh(db_obj)
        return db_obj

    # 统一构造带软删除过滤的查询；populate_existing 保证每次都读取最新行而非会话缓存
    def query(self, db: Session, *, include_deleted: bool = False) -> Query:
        query = db.query(self.model).populate_existing()
        if hasattr(self.model, "is_deleted") and not include_deleted:
            query = query.filter(self.model.is_deleted.is_(False))
        return query
