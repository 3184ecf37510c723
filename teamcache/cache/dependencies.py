"""
Dependency graph between source tables and cache-key prefixes.

Maps a changed table to the key prefixes that must be evicted, plus the fixed
coarse rules applied to every change:

- membership and schedule changes fan out to every ``team_`` key,
- aggregate roll-ups (company totals, executive dashboard) are always evicted.

The coarse rules trade precision for not tracking aggregate dependency chains.
"""
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import DependencyGraphError


DEFAULT_DEPENDENCIES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("teams", ("team_members", "schedule_entries")),
    ("global_sprint_settings", (
        "current_enhanced_sprint",
        "current_global_sprint",
        "sprint_calculations",
    )),
    ("schedule_entries", ("team_hours", "sprint_capacity", "coo_dashboard", "team_dashboard")),
    ("team_members", ("team_calculations", "company_totals")),
)

TEAM_SCOPED_PREFIX = "team_"
TEAM_FANOUT_TABLES: FrozenSet[str] = frozenset({"team_members", "schedule_entries"})
AGGREGATE_PREFIXES: Tuple[str, ...] = ("company_totals", "coo_dashboard")
CRITICAL_TABLES: FrozenSet[str] = frozenset({"global_sprint_settings", "schedule_entries"})

SourceTable = Union[Mapping[str, Sequence[str]], Iterable[Tuple[str, Sequence[str]]]]


def _check_prefix(prefix: str, context: str) -> str:
    if not isinstance(prefix, str) or not prefix.strip():
        # An empty prefix would match every key
        raise DependencyGraphError(f"Empty prefix in {context}")
    return prefix


class DependencyGraph:
    """
    Immutable, validated mapping ``source table -> ordered dependent prefixes``.

    Usage:
        graph = DependencyGraph.default()
        graph.invalidation_prefixes("schedule_entries", affected_row_id=42)
    """

    def __init__(
        self,
        table: SourceTable,
        aggregate_prefixes: Sequence[str] = AGGREGATE_PREFIXES,
        team_fanout_tables: Iterable[str] = TEAM_FANOUT_TABLES,
        critical_tables: Iterable[str] = CRITICAL_TABLES,
    ):
        """
        Build and validate the graph.

        Args:
            table: Mapping or sequence of (source, prefixes) pairs
            aggregate_prefixes: Prefixes evicted on every change
            team_fanout_tables: Tables whose row changes evict every team_ key
            critical_tables: Tables whose changes trigger pre-warming

        Raises:
            DependencyGraphError: On empty sources/prefixes or duplicate sources
        """
        pairs = table.items() if hasattr(table, "items") else table

        edges: Dict[str, Tuple[str, ...]] = {}
        for source, prefixes in pairs:
            _check_prefix(source, "source name")
            if source in edges:
                raise DependencyGraphError(f"Duplicate source table: {source}")
            ordered: List[str] = []
            for prefix in prefixes:
                _check_prefix(prefix, f"dependencies of '{source}'")
                if prefix not in ordered:
                    ordered.append(prefix)
            edges[source] = tuple(ordered)

        self._edges = edges
        self.aggregate_prefixes = tuple(
            _check_prefix(p, "aggregate prefixes") for p in aggregate_prefixes
        )
        self.team_fanout_tables = frozenset(team_fanout_tables)
        self.critical_tables = frozenset(critical_tables)

    @classmethod
    def default(cls) -> "DependencyGraph":
        return cls(DEFAULT_DEPENDENCIES)

    @property
    def sources(self) -> Tuple[str, ...]:
        return tuple(self._edges)

    def dependents_of(self, table_name: str) -> Tuple[str, ...]:
        """Dependent prefixes of a table; empty for untracked tables."""
        return self._edges.get(table_name, ())

    def is_critical(self, table_name: str) -> bool:
        return table_name in self.critical_tables

    def invalidation_prefixes(
        self,
        table_name: str,
        affected_row_id: Optional[int] = None,
    ) -> List[str]:
        """
        Ordered, de-duplicated prefixes to evict when a table changes.

        Order: the table itself, its dependents, the row-scoped key and the
        team fan-out (only when a row id is known), then aggregate roll-ups.
        """
        prefixes = [_check_prefix(table_name, "event table name")]
        prefixes.extend(self.dependents_of(table_name))

        if affected_row_id is not None:
            prefixes.append(f"{table_name}_{affected_row_id}")
            if table_name in self.team_fanout_tables:
                prefixes.append(TEAM_SCOPED_PREFIX)

        prefixes.extend(self.aggregate_prefixes)

        seen = set()
        ordered = []
        for prefix in prefixes:
            if prefix not in seen:
                seen.add(prefix)
                ordered.append(prefix)
        return ordered

    def __contains__(self, table_name: object) -> bool:
        return table_name in self._edges

    def __repr__(self) -> str:
        return f"DependencyGraph(sources={list(self._edges)})"
