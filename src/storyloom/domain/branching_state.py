"""Runtime records produced by branch execution."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

MOST_POPULAR_LIMIT = 10


@dataclass(frozen=True, slots=True)
class BranchHistoryEntry:
    id: str
    branch_point_id: str
    option_id: str
    from_node_id: str
    to_node_id: str
    timestamp: str
    flags: Dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class BranchAnalytics:
    """Usage counters for executed branches."""

    total_branches_traversed: int = 0
    option_usage: Dict[str, int] = field(default_factory=dict)
    branch_point_usage: Dict[str, int] = field(default_factory=dict)
    branch_point_last_used: Dict[str, str] = field(default_factory=dict)
    most_popular: List[str] = field(default_factory=list)

    def record(self, branch_point_id: str, option_id: str, timestamp: str) -> None:
        self.total_branches_traversed += 1
        self.option_usage[option_id] = self.option_usage.get(option_id, 0) + 1
        self.branch_point_usage[branch_point_id] = self.branch_point_usage.get(branch_point_id, 0) + 1
        self.branch_point_last_used[branch_point_id] = timestamp
        # Move-to-front list, capped.
        if option_id in self.most_popular:
            self.most_popular.remove(option_id)
        self.most_popular.insert(0, option_id)
        del self.most_popular[MOST_POPULAR_LIMIT:]

    def copy(self) -> "BranchAnalytics":
        return BranchAnalytics(
            total_branches_traversed=self.total_branches_traversed,
            option_usage=dict(self.option_usage),
            branch_point_usage=dict(self.branch_point_usage),
            branch_point_last_used=dict(self.branch_point_last_used),
            most_popular=list(self.most_popular),
        )
