# SQLAlchemy models
from .analytics import ProcessedResultRecord
from .base import Base

__all__ = [
    "Base",
    "ProcessedResultRecord",
]
