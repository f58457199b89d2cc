
from .factory import build_store
from .null_store import NullStore
from .postgres_store import PostgresCommunityStore
from .protocol import CommunityStore, PlatformAccountConflict, StoreError
from .store import SqliteCommunityStore

__all__ = [
    "CommunityStore",
    "NullStore",
    "PlatformAccountConflict",
    "PostgresCommunityStore",
    "SqliteCommunityStore",
    "StoreError",
    "build_store",
]
