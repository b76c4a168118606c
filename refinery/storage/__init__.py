from refinery.storage.database import Database
from refinery.storage.json_store import (
    DuplicateRecordError,
    JsonStore,
    RecordNotFoundError,
    StaleRecordError,
)
from refinery.storage.vector import VectorIndex

__all__ = [
    "Database",
    "DuplicateRecordError",
    "JsonStore",
    "RecordNotFoundError",
    "StaleRecordError",
    "VectorIndex",
]
