"""Stored-role and resource-count lookups backing the permission gate"""

import logging
from typing import Callable, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from chronos_auth.core.database import SessionLocal
from chronos_auth.models import Block, Goal, Habit, User, Workspace
from chronos_auth.schemas.auth import Role

logger = logging.getLogger(__name__)

RESOURCE_MODELS = {
    "workspaces": Workspace,
    "goals": Goal,
    "habits": Habit,
    "blocks": Block,
}


class UserDirectory(Protocol):
    def get_role(self, user_id: str) -> Optional[Role]:
        ...

    def count_resources(self, user_id: str, kind: str) -> int:
        ...


class SqlUserDirectory:
    """UserDirectory over the SQLAlchemy models; one session per call"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def get_role(self, user_id: str) -> Optional[Role]:
        db = self._session_factory()
        try:
            stored = db.query(User.role).filter(User.id == user_id).scalar()
        finally:
            db.close()

        if stored is None:
            return None
        try:
            return Role(stored)
        except ValueError:
            logger.warning("Unknown stored role %r for user %s", stored, user_id)
            return None

    def count_resources(self, user_id: str, kind: str) -> int:
        """
        Raises:
            ValueError: If ``kind`` is not a counted resource
            SQLAlchemyError: If the query fails
        """
        model = RESOURCE_MODELS.get(kind)
        if model is None:
            raise ValueError(f"Unknown resource kind: {kind}")

        db = self._session_factory()
        try:
            return db.query(func.count(model.id)).filter(model.user_id == user_id).scalar() or 0
        finally:
            db.close()


user_directory = SqlUserDirectory()
