from .controller import SessionLifecycleController
from .scheduler import RecurringTask

__all__ = ["SessionLifecycleController", "RecurringTask"]
