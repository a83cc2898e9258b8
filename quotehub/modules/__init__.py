"""
Modules

Business domain services
"""

from .quote.orchestrator import Orchestrator, build_orchestrator

__all__ = ["Orchestrator", "build_orchestrator"]
