"""
converge - Declarative infrastructure-and-release reconciler

Plans the difference between a desired-state document and the last-known
live state, applies it through provider adapters with locking and
partial-failure semantics, and drives application releases from build to
serving.
"""

__version__ = "0.1.0"


__all__ = ["ConvergeConfig", "load_config", "get_converge_home", "load", "plan"]

from .config import ConvergeConfig, load_config, get_converge_home
from .loader import load
from .planner import plan
