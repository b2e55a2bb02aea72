"""Schema package exports."""

from .jobs import Job

__all__ = ["Job"]
