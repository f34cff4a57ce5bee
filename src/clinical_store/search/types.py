"""Search parameter and compiled query types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SearchParameterType(str, Enum):
    """Declared FHIR search parameter types understood by the compiler."""

    STRING = "string"
    TOKEN = "token"
    REFERENCE = "reference"
    DATE = "date"
    ADDRESS = "address"
    NAME = "name"
    QUANTITY = "quantity"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class SearchParameter:
    """One occurrence of a search argument, constructed per query."""

    name: str
    declared_type: SearchParameterType
    raw_value: str
    modifier: Optional[str] = None


@dataclass(frozen=True)
class SearchParameterDefinition:
    """Where a named search parameter points inside a stored resource.

    Attributes:
        name: Canonical FHIR parameter name (``address-city``)
        type: Declared parameter type
        path: Field path, or path prefix for structured types
        value_field: Sub-field holding the code/value of a token
        forced_system: System implied by the parameter (``email``, ``phone``)
        target_type: Resource type a bare reference id points to
        precision: ``date`` or ``dateTime`` for date parameters
        period: Whether a date parameter targets a Period element
    """

    name: str
    type: SearchParameterType
    path: str
    value_field: str = ""
    forced_system: Optional[str] = None
    target_type: Optional[str] = None
    precision: str = "dateTime"
    period: bool = False


@dataclass
class OrGroup:
    """Disjunction of filter clauses; a match on any one satisfies the group."""

    clauses: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.clauses)

    def to_filter(self) -> Dict[str, Any]:
        """Render as a MongoDB ``$or`` expression."""
        return {"$or": list(self.clauses)}


@dataclass
class CompiledQuery:
    """Field-path fragments plus OR-groups, all conjoined.

    A later fragment for the same field path replaces an earlier one.
    """

    fields: Dict[str, Any] = field(default_factory=dict)
    or_groups: List[OrGroup] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.fields and not self.or_groups

    def to_filter(self) -> Dict[str, Any]:
        """Render the query as a MongoDB filter document."""
        query: Dict[str, Any] = dict(self.fields)
        if self.or_groups:
            query["$and"] = [group.to_filter() for group in self.or_groups]
        return query
