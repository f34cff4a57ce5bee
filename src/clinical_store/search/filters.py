"""Helpers that combine filter fragments into a compiled query."""

import re
from typing import Any, Dict, Iterable, Mapping, Union

from clinical_store.search.types import CompiledQuery, OrGroup


def regex_fragment(value: str, anchored: bool = True) -> Dict[str, Any]:
    """Case-insensitive match, anchored at the start unless told otherwise."""
    pattern = re.escape(value)
    if anchored:
        pattern = f"^{pattern}"
    return {"$regex": pattern, "$options": "i"}


def join_path(*parts: str) -> str:
    """Join dotted path segments, skipping empty ones."""
    return ".".join(part for part in parts if part)


def merge_fields(query: CompiledQuery, fragments: Mapping[str, Any]) -> CompiledQuery:
    """Copy path fragments into ``query``, replacing existing paths."""
    for path, fragment in fragments.items():
        query.fields[path] = fragment
    return query


def add_or_group(query: CompiledQuery, group: OrGroup) -> CompiledQuery:
    """Conjoin another OR-group, kept as a group even with one clause."""
    query.or_groups.append(group)
    return query


def combine(
    compiled: Iterable[Union[Mapping[str, Any], OrGroup]],
    query: Union[CompiledQuery, None] = None,
) -> CompiledQuery:
    """Fold path mappings and OR-groups into one CompiledQuery."""
    query = query if query is not None else CompiledQuery()
    for part in compiled:
        if isinstance(part, OrGroup):
            add_or_group(query, part)
        else:
            merge_fields(query, part)
    return query
