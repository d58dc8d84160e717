"""Raw REPL protocol support for serpico."""

from .raw_repl import RawReplDriver, ReplState

__all__ = ["RawReplDriver", "ReplState"]
