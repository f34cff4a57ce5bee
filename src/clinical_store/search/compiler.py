"""FHIR search-parameter compiler.

Translates one search argument into MongoDB filter fragments according to
its declared type. Every function here is pure: the same input always
yields the same fragment and nothing is read from storage.

Supported encodings:
- string: case-insensitive prefix match, ``:exact`` and ``:contains``
- token: ``code``, ``system|code``, ``system|`` and ``|code``
- reference: ``id`` or ``ResourceType/id``
- date: optional comparison prefix plus a partial ISO-8601 date/time
- quantity: ``[prefix]number|system|code``
- address / name: OR-group across the structured sub-fields
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from clinical_store.core.exceptions import InvalidArgumentError
from clinical_store.search.filters import combine, join_path, regex_fragment
from clinical_store.search.types import (
    CompiledQuery,
    OrGroup,
    SearchParameter,
    SearchParameterDefinition,
    SearchParameterType,
)
from clinical_store.utils.logging import get_logger

logger = get_logger(__name__)

Compiled = Union[Dict[str, Any], OrGroup]

COMPARATORS = ("eq", "ne", "gt", "lt", "ge", "le", "sa", "eb", "ap")
STRING_MODIFIERS = ("exact", "contains")

ADDRESS_FIELDS = ("line", "city", "state", "postalCode", "country")
NAME_FIELDS = ("family", "given")

_DATE_PATTERN = re.compile(
    r"^(?P<year>\d{4})"
    r"(?:-(?P<month>\d{2})"
    r"(?:-(?P<day>\d{2})"
    r"(?:T(?P<hour>\d{2}):(?P<minute>\d{2})"
    r"(?::(?P<second>\d{2})(?:\.\d+)?)?"
    r"(?P<tz>Z|[+-]\d{2}:\d{2})?"
    r")?)?)?$"
)

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

# precision -> (relativedelta step, number of components kept)
_PRECISIONS = {
    "year": (relativedelta(years=1), 1),
    "month": (relativedelta(months=1), 2),
    "day": (relativedelta(days=1), 3),
    "minute": (relativedelta(minutes=1), 5),
    "second": (relativedelta(seconds=1), 6),
}


@dataclass(frozen=True)
class DateRange:
    """Half-open range ``[start, end)`` implied by a partial date."""

    start: datetime
    end: datetime
    precision: str

    def format(self, moment: datetime) -> str:
        return format_partial_date(moment, self.precision)


def split_comparator(value: str) -> Tuple[str, str]:
    """Split a leading two-letter comparison prefix off ``value``."""
    if len(value) > 2 and value[:2] in COMPARATORS:
        return value[:2], value[2:]
    return "eq", value


def _require(value: Optional[str], kind: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidArgumentError(f"Empty {kind} search value")
    return str(value).strip()


def compile_string(value: str, modifier: Optional[str] = None) -> Any:
    """Compile a string parameter.

    Without a modifier the match is a case-insensitive prefix match on
    the trimmed value; ``exact`` is a case-sensitive equality on the value
    as given and ``contains`` a case-insensitive substring match.
    """
    text = _require(value, "string")
    if modifier is None:
        return regex_fragment(text)
    if modifier == "exact":
        return str(value)
    if modifier == "contains":
        return regex_fragment(text, anchored=False)
    raise InvalidArgumentError(f"Unsupported string modifier: {modifier}")


def compile_boolean(value: str) -> bool:
    """Compile ``true``/``false`` into a boolean equality."""
    value = _require(value, "boolean").lower()
    if value not in ("true", "false"):
        raise InvalidArgumentError(f"Invalid boolean search value: {value}")
    return value == "true"


def compile_token(
    value: str,
    value_field: str = "",
    path_prefix: str = "",
    forced_system: Optional[str] = None,
) -> Dict[str, Any]:
    """Compile a token parameter into a mapping of field path to value.

    Args:
        value: ``code``, ``system|code``, ``system|`` or ``|code``
        value_field: Sub-field holding the code (``code``, ``value``);
            empty when ``path_prefix`` itself holds the code
        path_prefix: Path of the Coding/Identifier/ContactPoint element
        forced_system: System implied by the parameter; injected as a
            system filter. The value may then not name another system and
            must carry a code.

    Raises:
        InvalidArgumentError: On empty values or bad pipe usage
    """
    value = _require(value, "token")
    system_path = join_path(path_prefix, "system")
    code_path = join_path(path_prefix, value_field)

    system, code = "", value
    if "|" in value:
        system, _, code = value.partition("|")
        if "|" in code:
            raise InvalidArgumentError(f"Too many '|' in token value: {value}")

    if forced_system:
        if system and system != forced_system:
            raise InvalidArgumentError(
                f"Token system must be '{forced_system}', got '{system}'"
            )
        if not code:
            raise InvalidArgumentError(f"Token value without a code: {value}")
        return {system_path: forced_system, code_path: code}

    if not system and not code:
        raise InvalidArgumentError("Token value '|' names neither system nor code")

    query: Dict[str, Any] = {}
    if system:
        query[system_path] = system
    if code:
        query[code_path] = code
    return query


def compile_reference(
    value: str, path_prefix: str, target_type: Optional[str] = None
) -> Dict[str, str]:
    """Compile a reference parameter into an exact ``<path>.reference`` match.

    A bare id is expanded to ``ResourceType/id`` when the parameter's
    target type is known; typed ids and absolute URLs match literally.
    """
    value = _require(value, "reference")
    reference = value
    if "/" not in value and target_type:
        reference = f"{target_type}/{value}"
    return {join_path(path_prefix, "reference"): reference}


def parse_partial_date(value: str) -> DateRange:
    """Parse a partial ISO-8601 date/time into the range it denotes.

    Raises:
        InvalidArgumentError: If the value is not a valid partial date
    """
    match = _DATE_PATTERN.match(value)
    if not match:
        raise InvalidArgumentError(f"Invalid date search value: {value}")
    parts = match.groupdict()

    if parts["second"] is not None:
        precision = "second"
    elif parts["minute"] is not None:
        precision = "minute"
    elif parts["day"] is not None:
        precision = "day"
    elif parts["month"] is not None:
        precision = "month"
    else:
        precision = "year"

    step, _ = _PRECISIONS[precision]
    try:
        start = datetime(
            int(parts["year"]),
            int(parts["month"] or 1),
            int(parts["day"] or 1),
            int(parts["hour"] or 0),
            int(parts["minute"] or 0),
            int(parts["second"] or 0),
        )
        end = start + step
    except (ValueError, OverflowError) as e:
        raise InvalidArgumentError(f"Invalid date search value: {value}") from e

    return DateRange(start=start, end=end, precision=precision)


def format_partial_date(moment: datetime, precision: str) -> str:
    """Render ``moment`` truncated to ``precision`` as an ISO-8601 prefix."""
    text = f"{moment.year:04d}"
    if precision == "year":
        return text
    text += f"-{moment.month:02d}"
    if precision == "month":
        return text
    text += f"-{moment.day:02d}"
    if precision == "day":
        return text
    text += f"T{moment.hour:02d}:{moment.minute:02d}"
    if precision == "minute":
        return text
    return text + f":{moment.second:02d}"


def _truncate(moment: datetime, precision: str) -> datetime:
    _, kept = _PRECISIONS[precision]
    fields = [
        moment.year,
        moment.month,
        moment.day,
        moment.hour,
        moment.minute,
        moment.second,
    ]
    defaults = [1, 1, 1, 0, 0, 0]
    return datetime(*(fields[:kept] + defaults[kept:]))


def _approximate(date_range: DateRange, now: Optional[datetime] = None) -> DateRange:
    """Widen a range by 10% of its distance from now, at least one unit."""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    unit = date_range.end - date_range.start
    gap = abs(now - date_range.start) * 0.1
    widen = max(gap, unit, timedelta(0))

    try:
        start = _truncate(date_range.start - widen, date_range.precision)
        end = date_range.end + widen
        truncated_end = _truncate(end, date_range.precision)
        if truncated_end != end:
            step, _ = _PRECISIONS[date_range.precision]
            truncated_end += step
    except (ValueError, OverflowError) as e:
        raise InvalidArgumentError(
            f"Approximate date range around {date_range.format(date_range.start)} "
            "falls outside the supported calendar"
        ) from e
    return DateRange(start=start, end=truncated_end, precision=date_range.precision)


def compile_date(
    value: str,
    precision: str = "dateTime",
    path_prefix: str = "",
    now: Optional[datetime] = None,
) -> Compiled:
    """Compile a date parameter into a range fragment.

    Args:
        value: Optional comparison prefix followed by a partial date
        precision: Precision of the stored element, ``date`` or ``dateTime``.
            Query values finer than a day are truncated for ``date``.
        path_prefix: When set, the element is a Period and the fragment is
            applied to its ``start`` and ``end`` as an OR-group
        now: Reference instant for ``ap``; defaults to the current time

    Returns:
        A MongoDB operator fragment, or an OrGroup for Period elements
    """
    value = _require(value, "date")
    comparator, raw_date = split_comparator(value)
    date_range = parse_partial_date(raw_date)

    if precision == "date" and date_range.precision in ("minute", "second"):
        date_range = parse_partial_date(format_partial_date(date_range.start, "day"))

    if comparator == "ap":
        date_range = _approximate(date_range, now)

    start = date_range.format(date_range.start)
    end = date_range.format(date_range.end)

    if comparator in ("eq", "ap"):
        fragment: Dict[str, Any] = {"$gte": start, "$lt": end}
    elif comparator == "ne":
        fragment = {"$not": {"$gte": start, "$lt": end}}
    elif comparator in ("gt", "sa"):
        fragment = {"$gte": end}
    elif comparator in ("lt", "eb"):
        fragment = {"$lt": start}
    elif comparator == "ge":
        fragment = {"$gte": start}
    else:
        fragment = {"$lt": end}

    if path_prefix:
        return OrGroup(
            [
                {join_path(path_prefix, "start"): fragment},
                {join_path(path_prefix, "end"): fragment},
            ]
        )
    return fragment


def _parse_number(value: str) -> Union[int, float]:
    if not _NUMBER_PATTERN.match(value):
        raise InvalidArgumentError(f"Invalid number in search value: {value}")
    number = float(value)
    if number.is_integer() and not any(c in value for c in ".eE"):
        return int(number)
    return number


def compile_quantity(value: str, path_prefix: str) -> Dict[str, Any]:
    """Compile ``[prefix]number|system|code`` into value/system/code paths."""
    value = _require(value, "quantity")
    comparator, rest = split_comparator(value)
    number_text, _, unit = rest.partition("|")
    system, _, code = unit.partition("|")
    if "|" in code:
        raise InvalidArgumentError(f"Too many '|' in quantity value: {value}")
    number = _parse_number(number_text)

    if comparator == "eq":
        fragment: Any = number
    elif comparator == "ne":
        fragment = {"$ne": number}
    elif comparator in ("gt", "sa"):
        fragment = {"$gt": number}
    elif comparator in ("lt", "eb"):
        fragment = {"$lt": number}
    elif comparator == "ge":
        fragment = {"$gte": number}
    elif comparator == "le":
        fragment = {"$lte": number}
    else:
        low, high = sorted((number * 0.9, number * 1.1))
        fragment = {"$gte": low, "$lte": high}

    query: Dict[str, Any] = {join_path(path_prefix, "value"): fragment}
    if system:
        query[join_path(path_prefix, "system")] = system
    if code:
        query[join_path(path_prefix, "code")] = code
    return query


def _structured_group(
    value: str, path_prefix: str, fields: Iterable[str], modifier: Optional[str]
) -> OrGroup:
    fragment = compile_string(value, modifier)
    return OrGroup([{join_path(path_prefix, name): fragment} for name in fields])


def compile_address(
    value: str, path_prefix: str = "address", modifier: Optional[str] = None
) -> OrGroup:
    """Match free text against each address sub-field; any may match."""
    return _structured_group(value, path_prefix, ADDRESS_FIELDS, modifier)


def compile_name(
    value: str, path_prefix: str = "name", modifier: Optional[str] = None
) -> OrGroup:
    """Match free text against family and given names; either may match."""
    return _structured_group(value, path_prefix, NAME_FIELDS, modifier)


class QueryCompiler:
    """Compile a set of search parameters for one resource type.

    The compiler is driven by a table of SearchParameterDefinition
    entries keyed by parameter name, so the per-type dispatch lives here
    and not in every resource service.
    """

    def __init__(self, definitions: Mapping[str, SearchParameterDefinition]):
        """Initialize with the parameter table of one resource type."""
        self.definitions = dict(definitions)
        self._dispatch: Dict[
            SearchParameterType,
            Callable[[SearchParameter, SearchParameterDefinition], Compiled],
        ] = {
            SearchParameterType.STRING: self._string,
            SearchParameterType.TOKEN: self._token,
            SearchParameterType.REFERENCE: self._reference,
            SearchParameterType.DATE: self._date,
            SearchParameterType.ADDRESS: self._address,
            SearchParameterType.NAME: self._name,
            SearchParameterType.QUANTITY: self._quantity,
            SearchParameterType.BOOLEAN: self._boolean,
        }

    def compile(self, params: Iterable[SearchParameter]) -> CompiledQuery:
        """Compile all parameters into one CompiledQuery."""
        params = list(params)
        query = combine(self.compile_parameter(param) for param in params)
        logger.debug(
            "search_compiled",
            parameters=[param.name for param in params],
            filter=query.to_filter(),
        )
        return query

    def compile_parameter(self, param: SearchParameter) -> Compiled:
        """Compile one parameter occurrence."""
        definition = self.definitions.get(param.name)
        if definition is None:
            raise InvalidArgumentError(f"Unknown search parameter: {param.name}")

        string_like = (
            SearchParameterType.STRING,
            SearchParameterType.ADDRESS,
            SearchParameterType.NAME,
        )
        if param.modifier and param.declared_type not in string_like:
            raise InvalidArgumentError(
                f"Modifier '{param.modifier}' is not supported for {param.name}"
            )
        return self._dispatch[param.declared_type](param, definition)

    def _string(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return {definition.path: compile_string(param.raw_value, param.modifier)}

    def _token(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return compile_token(
            param.raw_value,
            definition.value_field,
            definition.path,
            definition.forced_system,
        )

    def _reference(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return compile_reference(param.raw_value, definition.path, definition.target_type)

    def _date(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        if definition.period:
            return compile_date(param.raw_value, definition.precision, definition.path)
        return {definition.path: compile_date(param.raw_value, definition.precision)}

    def _address(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return compile_address(param.raw_value, definition.path, param.modifier)

    def _name(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return compile_name(param.raw_value, definition.path, param.modifier)

    def _quantity(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return compile_quantity(param.raw_value, definition.path)

    def _boolean(self, param: SearchParameter, definition: SearchParameterDefinition) -> Compiled:
        return {definition.path: compile_boolean(param.raw_value)}
