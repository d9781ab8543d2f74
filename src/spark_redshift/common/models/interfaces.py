from abc import ABC, abstractmethod
from enum import Enum
from typing import FrozenSet, Sequence

from pyspark import RDD
from pyspark.sql import DataFrame
from pyspark.sql.types import StructType

from .filters import Filter


class Capability(str, Enum):
    """What a relation can do for the engine."""
    PRUNED_FILTERED_SCAN = "pruned_filtered_scan"
    INSERTABLE = "insertable"


class BaseRelation(ABC):
    """Base interface for all relations exposed to the engine"""

    # Declared per class; the engine consults this instead of probing types
    capabilities: FrozenSet[Capability] = frozenset()

    @property
    @abstractmethod
    def schema(self) -> StructType:
        pass

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


class PrunedFilteredScan(ABC):
    """Interface for relations that scan with column pruning and filter pushdown"""

    @abstractmethod
    def build_scan(self, required_columns: Sequence[str], filters: Sequence[Filter]) -> RDD:
        pass


class InsertableRelation(ABC):
    """Interface for relations that accept inserted data"""

    @abstractmethod
    def insert(self, data: DataFrame, overwrite: bool) -> None:
        pass
