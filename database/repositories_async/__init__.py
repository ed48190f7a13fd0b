"""Async repositories for PostgreSQL data access"""

from database.repositories_async.base import BaseRepository
from database.repositories_async.conversations import ConversationRepository
from database.repositories_async.jobs import JobRepository

__all__ = ["BaseRepository", "ConversationRepository", "JobRepository"]
