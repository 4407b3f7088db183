from .base import InsertResult, Partition
from .sqlite_partition import SQLitePartition

__all__ = ["InsertResult", "Partition", "SQLitePartition"]
