"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from app.packages.workspace.db import session as db_session
from app.packages.workspace.models.base import Base
from app.packages.workspace.models.file_node import FileNode  # noqa: F401 - ensure table creation
from app.packages.workspace.models.project import Project, WorkspaceMember  # noqa: F401 - ensure table creation

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create all database tables if they do not exist.

    Schema migrations for production databases are managed outside this service;
    ``create_all`` only fills in missing tables and never alters existing ones.
    """
    Base.metadata.create_all(bind=db_session.engine)
    logger.info("Database schema ensured for %s", db_session.engine.url.render_as_string(hide_password=True))
