"""
Common data models for the Redshift data source.
"""

from .parameters import Parameters, SaveMode, TableName
from .interfaces import BaseRelation, Capability, InsertableRelation, PrunedFilteredScan
from .filters import (
    And, EqualTo, Filter, GreaterThan, GreaterThanOrEqual, In, IsNotNull, IsNull,
    LessThan, LessThanOrEqual, Not, NotEqualTo, Or, StringContains, StringEndsWith,
    StringStartsWith,
)

__all__ = [
    "Parameters",
    "SaveMode",
    "TableName",
    "BaseRelation",
    "Capability",
    "InsertableRelation",
    "PrunedFilteredScan",
    "Filter",
    "EqualTo",
    "NotEqualTo",
    "GreaterThan",
    "GreaterThanOrEqual",
    "LessThan",
    "LessThanOrEqual",
    "IsNull",
    "IsNotNull",
    "In",
    "And",
    "Or",
    "Not",
    "StringStartsWith",
    "StringEndsWith",
    "StringContains",
]
