"""
Service wiring for request handlers.
"""
from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from messaging.core.config import Settings, get_settings
from messaging.core.database import get_db
from messaging.services.delivery import DeliveryResolver
from messaging.services.directory import UserDirectory
from messaging.services.notify import Notifier, get_notifier
from messaging.services.store import MessageStore


def get_directory(db: Annotated[Session, Depends(get_db)]) -> UserDirectory:
    return UserDirectory(db)


def get_resolver(
    directory: Annotated[UserDirectory, Depends(get_directory)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> DeliveryResolver:
    return DeliveryResolver(directory, settings)


def get_store(
    db: Annotated[Session, Depends(get_db)],
    resolver: Annotated[DeliveryResolver, Depends(get_resolver)],
    settings: Annotated[Settings, Depends(get_settings)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> MessageStore:
    return MessageStore(db, resolver, settings, notifier)
