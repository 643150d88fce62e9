"""Route channel conversations to agent instances and serve them over HTTP."""

__version__ = "0.1.0"