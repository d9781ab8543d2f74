"""
Filter predicates handed to a scan by the engine.

Each filter names the columns it references and can evaluate itself against a
row using SQL three-valued logic (None stands for UNKNOWN). The evaluation is
what lets the engine re-apply every filter after the scan, including the ones
that could not be pushed down into the UNLOAD query.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Mapping, Optional, Tuple


def _as_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time(), tzinfo=timezone.utc)
    return value


def align_operands(actual: Any, expected: Any) -> Tuple[Any, Any]:
    """
    Make date and datetime operands comparable.

    As in SQL, a date compared with a timestamp is widened to midnight.
    Naive datetimes are taken as UTC, the zone timestamps are read back in.
    """
    if isinstance(actual, datetime) or isinstance(expected, datetime):
        if isinstance(actual, date) and isinstance(expected, date):
            return _as_datetime(actual), _as_datetime(expected)
    return actual, expected


class Filter(ABC):
    """Base class for all filter predicates."""

    @abstractmethod
    def references(self) -> Tuple[str, ...]:
        """Column names used by this filter."""
        pass

    @abstractmethod
    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        """Evaluate against a row, returning True, False or None (unknown)."""
        pass


@dataclass(frozen=True)
class _Comparison(Filter):
    attribute: str
    value: Any

    def references(self) -> Tuple[str, ...]:
        return (self.attribute,)

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        actual = row.get(self.attribute)
        if actual is None or self.value is None:
            return None
        return self._compare(*align_operands(actual, self.value))

    def _compare(self, actual: Any, expected: Any) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class EqualTo(_Comparison):
    def _compare(self, actual, expected):
        return actual == expected


@dataclass(frozen=True)
class NotEqualTo(_Comparison):
    def _compare(self, actual, expected):
        return actual != expected


@dataclass(frozen=True)
class GreaterThan(_Comparison):
    def _compare(self, actual, expected):
        return actual > expected


@dataclass(frozen=True)
class GreaterThanOrEqual(_Comparison):
    def _compare(self, actual, expected):
        return actual >= expected


@dataclass(frozen=True)
class LessThan(_Comparison):
    def _compare(self, actual, expected):
        return actual < expected


@dataclass(frozen=True)
class LessThanOrEqual(_Comparison):
    def _compare(self, actual, expected):
        return actual <= expected


@dataclass(frozen=True)
class IsNull(Filter):
    attribute: str

    def references(self) -> Tuple[str, ...]:
        return (self.attribute,)

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        return row.get(self.attribute) is None


@dataclass(frozen=True)
class IsNotNull(Filter):
    attribute: str

    def references(self) -> Tuple[str, ...]:
        return (self.attribute,)

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        return row.get(self.attribute) is not None


@dataclass(frozen=True)
class In(Filter):
    attribute: str
    values: Tuple[Any, ...]

    def __post_init__(self):
        # Accept any iterable but keep the dataclass hashable
        object.__setattr__(self, "values", tuple(self.values))

    def references(self) -> Tuple[str, ...]:
        return (self.attribute,)

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        actual = row.get(self.attribute)
        if actual is None:
            return None
        if any(a == e for a, e in (align_operands(actual, v) for v in self.values if v is not None)):
            return True
        if any(v is None for v in self.values):
            return None
        return False


@dataclass(frozen=True)
class And(Filter):
    left: Filter
    right: Filter

    def references(self) -> Tuple[str, ...]:
        return self.left.references() + self.right.references()

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        left = self.left.evaluate(row)
        right = self.right.evaluate(row)
        if left is False or right is False:
            return False
        if left is None or right is None:
            return None
        return True


@dataclass(frozen=True)
class Or(Filter):
    left: Filter
    right: Filter

    def references(self) -> Tuple[str, ...]:
        return self.left.references() + self.right.references()

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        left = self.left.evaluate(row)
        right = self.right.evaluate(row)
        if left is True or right is True:
            return True
        if left is None or right is None:
            return None
        return False


@dataclass(frozen=True)
class Not(Filter):
    child: Filter

    def references(self) -> Tuple[str, ...]:
        return self.child.references()

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        result = self.child.evaluate(row)
        return None if result is None else not result


@dataclass(frozen=True)
class _StringMatch(Filter):
    attribute: str
    value: str

    def references(self) -> Tuple[str, ...]:
        return (self.attribute,)

    def evaluate(self, row: Mapping[str, Any]) -> Optional[bool]:
        actual = row.get(self.attribute)
        if actual is None:
            return None
        return self._match(str(actual), self.value)

    def _match(self, actual: str, pattern: str) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class StringStartsWith(_StringMatch):
    def _match(self, actual, pattern):
        return actual.startswith(pattern)


@dataclass(frozen=True)
class StringEndsWith(_StringMatch):
    def _match(self, actual, pattern):
        return actual.endswith(pattern)


@dataclass(frozen=True)
class StringContains(_StringMatch):
    def _match(self, actual, pattern):
        return pattern in actual


def row_matches(column_names: Tuple[str, ...], filters: Tuple[Filter, ...],
                values: Tuple[Any, ...]) -> bool:
    """
    Check a positional row against all filters.

    Rows for which any filter is False or unknown are rejected, matching the
    semantics of a SQL WHERE clause.
    """
    row = dict(zip(column_names, values))
    return all(f.evaluate(row) is True for f in filters)
