from sqlalchemy.orm import declarative_base

Base = declarative_base()

from .lock import MaintenanceLock, BatchLock, TaskLock, DocumentLock  # noqa: F401
from .counter import Counter  # noqa: F401
from .batch import Batch, Task, TaskAttempt, BatchType, TaskType, ImportType  # noqa: F401
from .document import Document  # noqa: F401
