"""Database models"""

from chronos_auth.models.user import User
from chronos_auth.models.planner import Block, Goal, Habit, Workspace

__all__ = ["User", "Workspace", "Goal", "Habit", "Block"]
