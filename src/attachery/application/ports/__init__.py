"""Ports the application layer depends on; infrastructure implements them."""

from attachery.application.ports.dispatcher import Dispatcher
from attachery.application.ports.persistence import FunctionPersistence, PersistenceAdapter, PersistResult
from attachery.application.ports.storage import MovableStorage, MultiDeleteStorage, Storage, supports

__all__ = [
    "Dispatcher",
    "FunctionPersistence",
    "PersistenceAdapter",
    "PersistResult",
    "MovableStorage",
    "MultiDeleteStorage",
    "Storage",
    "supports",
]
