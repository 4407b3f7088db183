from .serialization import RowSerializer
from .parser import parse_filter

__all__ = ["RowSerializer", "parse_filter"]
