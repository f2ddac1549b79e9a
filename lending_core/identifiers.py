"""
Human-readable sequential identifiers (APP001, LN001, B001, REC001).

Numbers come from the storage engine's atomic counters, so two concurrent
allocations can never return the same identifier.
"""

from typing import Tuple

from .storage import StorageInterface


class IdentifierAllocator:

    def __init__(self, storage: StorageInterface, padding: int = 3):
        self.storage = storage
        self.padding = padding

    def format(self, prefix: str, number: int) -> str:
        return f"{prefix}{number:0{self.padding}d}"

    def next_number(self, prefix: str) -> Tuple[str, int]:
        """Allocate the next identifier for a prefix, returning it with its sequence value"""
        number = self.storage.next_sequence(f"id:{prefix}")
        return self.format(prefix, number), number

    def next_id(self, prefix: str) -> str:
        return self.next_number(prefix)[0]
