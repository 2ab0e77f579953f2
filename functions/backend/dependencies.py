"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header

from backend.config import get_settings
from backend.db import DbClient, InMemoryDbClient, PostgresDbClient, UserRecord
from backend.storage import CosStorageClient, InMemoryStorageClient, StorageClient

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_storage_client: StorageClient | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so billing state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.cos_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = CosStorageClient(
            bucket=settings.cos_bucket,
            region=settings.cos_region or "",
            endpoint=settings.cos_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_current_user(
    x_user_subject: Optional[str] = Header(default=None),
    db: DbClient = Depends(get_db_client),
) -> Optional[UserRecord]:
    """
    Resolve the caller from the auth subject forwarded by the gateway.

    An unknown or missing subject is not an error; callers decide whether
    attribution is required.
    """
    if not x_user_subject:
        return None
    user = db.get_user_by_subject(x_user_subject)
    if user is None:
        logger.warning("No user found for auth subject %s", x_user_subject)
    return user
