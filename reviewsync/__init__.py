"""Review synchronization, durable job queue and AI draft preparation engine."""

__version__ = "0.1.0"
