"""FHIR search-parameter compilation."""

from clinical_store.search.compiler import (
    QueryCompiler,
    compile_address,
    compile_boolean,
    compile_date,
    compile_name,
    compile_quantity,
    compile_reference,
    compile_string,
    compile_token,
)
from clinical_store.search.registry import ResourceTypeRegistry, get_registry
from clinical_store.search.types import (
    CompiledQuery,
    OrGroup,
    SearchParameter,
    SearchParameterDefinition,
    SearchParameterType,
)

__all__ = [
    "CompiledQuery",
    "OrGroup",
    "QueryCompiler",
    "ResourceTypeRegistry",
    "SearchParameter",
    "SearchParameterDefinition",
    "SearchParameterType",
    "compile_address",
    "compile_boolean",
    "compile_date",
    "compile_name",
    "compile_quantity",
    "compile_reference",
    "compile_string",
    "compile_token",
    "get_registry",
]
