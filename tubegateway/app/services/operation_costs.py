"""Static quota cost table for provider operations."""

from types import MappingProxyType
from typing import Iterator, Mapping, Optional

# Published YouTube Data API v3 unit costs
DEFAULT_OPERATION_COSTS: Mapping[str, int] = MappingProxyType(
    {
        "search": 100,
        "videos.list": 1,
        "channels.list": 1,
        "playlists.list": 1,
        "playlistItems.list": 1,
        "commentThreads.list": 1,
        "videoCategories.list": 1,
    }
)


class OperationCostTable(Mapping[str, int]):
    """Immutable ``operation kind -> unit cost`` mapping.

    Costs must be non-negative integers; a bad table is a programming error
    and fails loudly at construction.

    Batch policy is flat per call: a list call costs its unit cost whether it
    carries one identifier or fifty, which is how the provider bills list
    endpoints. ``cost_for`` is the single place that would change if a
    per-item policy were ever needed.
    """

    def __init__(self, costs: Optional[Mapping[str, int]] = None):
        table = dict(DEFAULT_OPERATION_COSTS if costs is None else costs)
        for kind, cost in table.items():
            if isinstance(cost, bool) or not isinstance(cost, int):
                raise ValueError(f"cost for {kind!r} must be an integer, got {cost!r}")
            if cost < 0:
                raise ValueError(f"cost for {kind!r} must be non-negative, got {cost}")
        self._costs = MappingProxyType(table)

    def __getitem__(self, operation_kind: str) -> int:
        return self._costs[operation_kind]

    def __iter__(self) -> Iterator[str]:
        return iter(self._costs)

    def __len__(self) -> int:
        return len(self._costs)

    def __repr__(self) -> str:
        return f"OperationCostTable({dict(self._costs)!r})"

    def cost_for(self, operation_kind: str, batch_size: int = 1) -> int:
        """Estimated cost of one call carrying ``batch_size`` identifiers.

        Raises:
            KeyError: If the operation kind has no published cost
            ValueError: If ``batch_size`` is less than 1
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        return self._costs[operation_kind]
