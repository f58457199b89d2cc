from .identity import MemoryIdentityMixin
from .interactions import MemoryInteractionsMixin
from .schema import MemorySchemaMixin
from .standings import MemoryStandingsMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryIdentityMixin",
    "MemoryInteractionsMixin",
    "MemoryStandingsMixin",
]
