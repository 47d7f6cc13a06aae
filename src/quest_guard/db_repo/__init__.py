from .base import BaseDatabase
from .quests import QuestMixin
from .users import UserMixin
from .completions import CompletionMixin
from .security import SecurityMixin
from .progress import ProgressMixin

__all__ = [
    "BaseDatabase",
    "QuestMixin",
    "UserMixin",
    "CompletionMixin",
    "SecurityMixin",
    "ProgressMixin",
]
