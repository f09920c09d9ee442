"""Worker profile management."""

from .loader import ProfileLoadError, ProfileLoader
from .models import DEFAULT_PROFILE, WorkerProfile

__all__ = ["DEFAULT_PROFILE", "ProfileLoadError", "ProfileLoader", "WorkerProfile"]
