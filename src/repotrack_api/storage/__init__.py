"""SQLite persistence for projects and the default job queue."""

from repotrack_api.storage.dao import JobDAO, ProjectDAO
from repotrack_api.storage.db import Database, get_db, reset_db

__all__ = ["Database", "JobDAO", "ProjectDAO", "get_db", "reset_db"]
