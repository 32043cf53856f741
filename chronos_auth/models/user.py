"""User model"""

from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.sql import func

from chronos_auth.core.database import Base


class User(Base):
    """Stored account record; the role here overrides the one in a token"""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(20), default="user", nullable=False)
    plan = Column(String(20), default="free", nullable=False)
    display_name = Column(String(100))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_users_role', 'role'),
    )

    def __repr__(self):
        return f"<User(id='{self.id}', email='{self.email}', role='{self.role}')>"
