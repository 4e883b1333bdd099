"""Background job queue with checkpointed pipeline execution."""

__version__ = "1.0.0"
