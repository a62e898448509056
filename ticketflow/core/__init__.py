"""
Ticket Flow - Core Package
==========================

Configuration, persistence, schemas and the workflow engine.
"""

from ticketflow.core.config import settings
from ticketflow.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
