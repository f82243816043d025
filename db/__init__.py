"""Database package."""

from db.base import Base
from db import models  # noqa: F401  registers tables on Base.metadata

__all__ = ["Base", "models"]
