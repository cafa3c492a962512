"""Base repository interface for user-owned entities."""
from abc import ABC, abstractmethod
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Abstract base class for repositories of user-owned rows.

    Every method takes the verified ``user_id`` of the caller; rows owned
    by anyone else behave exactly as if they did not exist.
    """

    @abstractmethod
    def create(self, user_id: str, entity: T) -> T:
        """Create a new entity owned by ``user_id``."""
        pass

    @abstractmethod
    def get(self, user_id: str, id: str) -> Optional[T]:
        """Get an entity by ID, or None if absent or not owned."""
        pass

    @abstractmethod
    def get_all(self, user_id: str) -> List[T]:
        """Get all entities owned by ``user_id``."""
        pass

    @abstractmethod
    def update(self, user_id: str, entity: T) -> T:
        """Update an entity."""
        pass

    @abstractmethod
    def delete(self, user_id: str, id: str) -> None:
        """Delete an entity by ID."""
        pass
