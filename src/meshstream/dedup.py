"""Packet identity and the append-only dedup index."""

from collections.abc import Iterable, Iterator


def packet_identity(from_node: int, packet_id: int) -> str:
    """Build the dedup key for a packet.

    Args:
        from_node: Numeric id of the originating node
        packet_id: Packet id assigned by the originating node

    Returns:
        Identity string such as ``!0000abcd_1234``
    """
    return f"!{from_node:08x}_{packet_id}"


class PacketDedupIndex:
    """Persistent set of packet identities that only ever grows.

    ``add`` returns a new index and leaves the receiver untouched. Linear
    use (always extending the newest index) shares one underlying table,
    so adding is O(1); extending an older version forks the table.
    """

    __slots__ = ("_positions", "_size")

    def __init__(self, identities: Iterable[str] = ()):
        self._positions: dict[str, int] = {}
        for identity in identities:
            if identity not in self._positions:
                self._positions[identity] = len(self._positions)
        self._size = len(self._positions)

    def has(self, identity: str) -> bool:
        position = self._positions.get(identity)
        return position is not None and position < self._size

    __contains__ = has

    def add(self, identity: str) -> "PacketDedupIndex":
        """Return an index that also contains ``identity``.

        Adding an identity that is already present returns ``self``.
        """
        if self.has(identity):
            return self

        positions = self._positions
        if len(positions) != self._size:
            # A sibling version already extended the shared table
            positions = {key: pos for key, pos in positions.items() if pos < self._size}

        positions[identity] = self._size
        new = object.__new__(PacketDedupIndex)
        new._positions = positions
        new._size = self._size + 1
        return new

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[str]:
        return (key for key, pos in list(self._positions.items()) if pos < self._size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PacketDedupIndex):
            return NotImplemented
        return len(self) == len(other) and all(other.has(identity) for identity in self)

    __hash__ = None

    def __repr__(self) -> str:
        return f"PacketDedupIndex(size={self._size})"
