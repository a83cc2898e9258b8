"""
quotehub

Multi-provider insurance quote aggregation engine
"""

__version__ = "1.0.0"

from .core.config import Config
from .core.logger import Logger

__all__ = [
    "Config",
    "Logger",
    "__version__",
]
