"""
codeindex - local semantic code index.

Scans a workspace, embeds its source files in chunks, stores the vectors and
keeps them current as files change.
"""

__version__ = "0.1.0"
__all__ = [
    "Config",
    "CodeIndexService",
    "IndexManager",
    "IndexState",
    "IndexStatus",
]

from codeindex.config import Config
from codeindex.main import CodeIndexService
from codeindex.manager import IndexManager, IndexState, IndexStatus
