"""conduit: supervise Claude Code sessions and decode their output streams."""

__version__ = "0.1.0"
