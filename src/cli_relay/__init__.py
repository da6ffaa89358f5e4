"""Run external CLI model providers as foreground calls or background jobs."""

__version__ = "0.1.0"
