"""Resource type registry.

Given a resource name and a base version tag, returns the declared search
parameters for that resource and turns raw request arguments into typed
SearchParameter objects.
"""

from typing import Any, Dict, List, Mapping, Optional

from clinical_store.core.exceptions import InvalidArgumentError
from clinical_store.search.parameters import R4, SEARCH_PARAMETER_TABLES, ParameterTable
from clinical_store.search.types import SearchParameter, SearchParameterDefinition

# Keys a FHIR framework passes alongside the search arguments
FRAMEWORK_ARGUMENTS = frozenset(
    {"base", "id", "version_id", "resource", "patch_content"}
)


class ResourceTypeRegistry:
    """Lookup of search-parameter tables by resource type and base version."""

    def __init__(
        self,
        tables: Optional[Mapping[str, Mapping[str, ParameterTable]]] = None,
        default_base: str = R4,
    ):
        """Initialize the registry.

        Args:
            tables: ``{base: {resource_type: {name: definition}}}``;
                defaults to the built-in tables
            default_base: Base version used when none is given
        """
        source = tables if tables is not None else SEARCH_PARAMETER_TABLES
        self._tables: Dict[str, Dict[str, ParameterTable]] = {
            base: {name: dict(params) for name, params in resources.items()}
            for base, resources in source.items()
        }
        self.default_base = default_base

    @property
    def bases(self) -> List[str]:
        return sorted(self._tables)

    def resource_types(self, base: Optional[str] = None) -> List[str]:
        """Resource types declared for ``base``."""
        return sorted(self._resources(base))

    def register(
        self, resource_type: str, params: ParameterTable, base: Optional[str] = None
    ) -> None:
        """Add or replace the parameter table of a resource type."""
        self._tables.setdefault(base or self.default_base, {})[resource_type] = dict(
            params
        )

    def search_parameters(
        self, resource_type: str, base: Optional[str] = None
    ) -> Dict[str, SearchParameterDefinition]:
        """Return the declared search parameters of ``resource_type``.

        Raises:
            InvalidArgumentError: If the resource type or base is unknown
        """
        resources = self._resources(base)
        if resource_type not in resources:
            raise InvalidArgumentError(
                f"Unknown resource type '{resource_type}' for base "
                f"{base or self.default_base}"
            )
        return dict(resources[resource_type])

    def parse_arguments(
        self,
        resource_type: str,
        args: Mapping[str, Any],
        base: Optional[str] = None,
    ) -> List[SearchParameter]:
        """Turn a raw argument mapping into typed search parameters.

        Argument names may carry a modifier (``family:exact``). Framework
        keys and empty values are skipped; list values produce one
        parameter per entry.

        Raises:
            InvalidArgumentError: For names not declared for the resource
        """
        definitions = self.search_parameters(resource_type, base)
        params: List[SearchParameter] = []

        for key, value in args.items():
            if key in FRAMEWORK_ARGUMENTS or value is None or value == "":
                continue

            name, _, modifier = key.partition(":")
            definition = definitions.get(name)
            if definition is None:
                raise InvalidArgumentError(
                    f"Invalid search parameter for {resource_type}: {name}"
                )

            values = value if isinstance(value, (list, tuple)) else [value]
            for raw in values:
                params.append(
                    SearchParameter(
                        name=name,
                        declared_type=definition.type,
                        raw_value=str(raw),
                        modifier=modifier or None,
                    )
                )

        return params

    def _resources(self, base: Optional[str]) -> Dict[str, ParameterTable]:
        base = base or self.default_base
        if base not in self._tables:
            raise InvalidArgumentError(f"Unknown FHIR base version: {base}")
        return self._tables[base]


_registry: Optional[ResourceTypeRegistry] = None


def get_registry() -> ResourceTypeRegistry:
    """Get the process-wide registry of built-in tables."""
    global _registry
    if _registry is None:
        _registry = ResourceTypeRegistry()
    return _registry
