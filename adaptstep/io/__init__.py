"""I/O helper subpackage."""
from . import sinks, writer

__all__ = ["sinks", "writer"]
