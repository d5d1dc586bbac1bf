"""Domain primitives for cluster and instance identification."""

import uuid
from dataclasses import dataclass
from typing import Iterator, Tuple

PORTS_PER_INSTANCE = 4


@dataclass(frozen=True)
class ClusterId:
    """Validated cluster identifier. Hashable for use as dictionary key."""

    value: str

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError("ClusterId cannot be empty")

        normalized = self.value.replace("_", "").replace("-", "")
        if not normalized.isalnum():
            raise ValueError(f"ClusterId must be alphanumeric with _ or -: {self.value}")

    @classmethod
    def generate(cls) -> "ClusterId":
        return cls(str(uuid.uuid4()))

    @property
    def short(self) -> str:
        return self.value.replace("-", "")[:8]

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class InstancePorts:
    """The fixed port set of one instance.

    ``admin`` is reserved with the rest of the block but nothing listens on
    it while the instance serves its console on ``--admin-sock``, which is
    how the spawner starts every instance. Port checks and the admin bridge
    use it only for records without an admin socket.
    """

    binary: int
    http: int
    pg: int
    admin: int

    def __post_init__(self) -> None:
        for port in self.as_tuple():
            if not 0 < port < 65536:
                raise ValueError(f"Port out of range: {port}")
        if len(set(self.as_tuple())) != PORTS_PER_INSTANCE:
            raise ValueError(f"Instance ports must be distinct: {self.as_tuple()}")

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.binary, self.http, self.pg, self.admin)

    def __iter__(self) -> Iterator[int]:
        return iter(self.as_tuple())


@dataclass(frozen=True)
class PortBlock:
    """Contiguous reserved port range ``[start, start + size)``."""

    start: int
    size: int

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError("PortBlock size must be positive")
        if self.start <= 0 or self.end > 65536:
            raise ValueError(f"PortBlock out of range: {self.start}-{self.end}")

    @property
    def end(self) -> int:
        return self.start + self.size

    def overlaps(self, other: "PortBlock") -> bool:
        return self.start < other.end and other.start < self.end

    def ports(self) -> range:
        return range(self.start, self.end)

    def instance_ports(self, index: int) -> InstancePorts:
        """Slice the ports of instance ``index`` out of this block."""
        offset = self.start + index * PORTS_PER_INSTANCE
        if index < 0 or offset + PORTS_PER_INSTANCE > self.end:
            raise IndexError(f"Instance {index} does not fit into block {self}")
        return InstancePorts(
            binary=offset, http=offset + 1, pg=offset + 2, admin=offset + 3
        )

    def __str__(self) -> str:
        return f"{self.start}-{self.end - 1}"
