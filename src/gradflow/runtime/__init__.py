from .executor import Executor
from .session import Session

__all__ = ["Executor", "Session"]
