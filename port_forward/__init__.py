"""Port forwarding supervisor: one socat process per configured rule."""

from .controller import LifecycleController
from .registry import FileRegistry, MemoryRegistry
from .rules import ForwardRule, Protocol, load_rules, parse_rules

__version__ = "2.0.0"

__all__ = [
    "ForwardRule",
    "Protocol",
    "parse_rules",
    "load_rules",
    "FileRegistry",
    "MemoryRegistry",
    "LifecycleController",
]
