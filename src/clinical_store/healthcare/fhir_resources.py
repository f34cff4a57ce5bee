"""FHIR resource model helpers.

Converts write payloads into plain documents and, optionally, wraps stored
documents into ``fhirclient`` model objects on the way out.
"""

import copy
import importlib
from typing import Any, Callable, Dict, Mapping

from fhirclient.models.fhirabstractbase import FHIRValidationError

from clinical_store.core.exceptions import InvalidArgumentError
from clinical_store.utils.logging import get_logger

logger = get_logger(__name__)

ResourceFactory = Callable[[Dict[str, Any]], Any]


def as_document(payload: Any) -> Dict[str, Any]:
    """Return a detached JSON document for a write payload.

    Accepts a mapping or any FHIR model exposing ``as_json()``.

    Raises:
        InvalidArgumentError: If the payload is neither
    """
    if hasattr(payload, "as_json"):
        try:
            document = payload.as_json()
        except FHIRValidationError as e:
            raise InvalidArgumentError(f"Invalid FHIR resource: {e}") from e
        return copy.deepcopy(dict(document))
    if isinstance(payload, Mapping):
        return copy.deepcopy(dict(payload))
    raise InvalidArgumentError(
        f"Resource payload must be a mapping, got {type(payload).__name__}"
    )


def resolve_resource_class(resource_type: str) -> Any:
    """Find the ``fhirclient`` model class for ``resource_type``.

    Raises:
        InvalidArgumentError: If fhirclient has no such model
    """
    try:
        module = importlib.import_module(f"fhirclient.models.{resource_type.lower()}")
        return getattr(module, resource_type)
    except (ImportError, AttributeError) as e:
        raise InvalidArgumentError(f"No FHIR model for {resource_type}") from e


def fhir_model_factory(resource_type: str) -> ResourceFactory:
    """Build a factory turning stored documents into model objects.

    Models are constructed non-strictly: unknown or malformed elements are
    logged by fhirclient instead of failing the read.
    """
    model_class = resolve_resource_class(resource_type)

    def build(document: Dict[str, Any]) -> Any:
        return model_class(jsondict=document, strict=False)

    return build
