
from .config import Settings
from .service import CommunityMemoryService

__all__ = ["CommunityMemoryService", "Settings"]
