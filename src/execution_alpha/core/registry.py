"""
Active object registry

Opaque-id table for live tasks and iceberg orders. Ids combine a caller
prefix with a monotonically increasing sequence number, so two objects
created in the same millisecond never collide.
"""

from typing import Callable, Dict, Generic, List, Optional, TypeVar

from .exceptions import TaskNotFoundError

T = TypeVar('T')


class Registry(Generic[T]):
    """Create / lookup / remove table keyed by opaque ids"""

    def __init__(self, kind: str = "task"):
        self.kind = kind
        self._items: Dict[str, T] = {}
        self._order: Dict[str, int] = {}
        self._sequence = 0

    def create(self, prefix: str, factory: Callable[[str], T]) -> T:
        """
        Allocate an id and store the object built for it

        Args:
            prefix: Human-readable id prefix
            factory: Builds the object from its allocated id

        Returns:
            The stored object
        """
        self._sequence += 1
        item_id = f"{prefix}_{self._sequence}"
        item = factory(item_id)
        self._items[item_id] = item
        self._order[item_id] = self._sequence
        return item

    def get(self, item_id: str) -> Optional[T]:
        return self._items.get(item_id)

    def require(self, item_id: str) -> T:
        """Lookup that raises TaskNotFoundError for unknown ids"""
        item = self._items.get(item_id)
        if item is None:
            raise TaskNotFoundError(item_id, self.kind)
        return item

    def remove(self, item_id: str) -> Optional[T]:
        self._order.pop(item_id, None)
        return self._items.pop(item_id, None)

    def ids(self) -> List[str]:
        """Ids in creation order"""
        return sorted(self._items, key=self._order.__getitem__)

    def values(self) -> List[T]:
        return [self._items[item_id] for item_id in self.ids()]

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)
