"""Immutable insertion-ordered set used for membership lists."""

from collections.abc import Hashable, Iterable, Iterator, Sequence
from typing import Any

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema


class OrderedSet(Sequence):
    """Immutable sequence of unique items kept in first-insertion order.

    ``add`` returns a new set (or ``self`` when the item is already a
    member), so records holding an ``OrderedSet`` can be shared between
    aggregator states without aliasing surprises.
    """

    __slots__ = ("_items", "_members")

    def __init__(self, items: Iterable[Hashable] = ()):
        unique = dict.fromkeys(items)
        self._items = tuple(unique)
        self._members = frozenset(unique)

    def add(self, item: Hashable) -> "OrderedSet":
        if item in self._members:
            return self
        new = object.__new__(OrderedSet)
        new._items = self._items + (item,)
        new._members = self._members | {item}
        return new

    def __contains__(self, item: object) -> bool:
        return item in self._members

    def __iter__(self) -> Iterator:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index):
        return self._items[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, OrderedSet):
            return self._items == other._items
        if isinstance(other, (list, tuple)):
            return self._items == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"OrderedSet({list(self._items)!r})"

    @classmethod
    def _validate(cls, value: Any) -> "OrderedSet":
        if isinstance(value, OrderedSet):
            return value
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            raise ValueError(f"Expected an iterable of members, got {type(value).__name__}")
        return cls(value)

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(list),
        )
