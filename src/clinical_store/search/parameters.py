"""FHIR search parameter tables.

One table per resource type and base version tag, mapping the canonical
parameter name to where it points inside a stored resource.
"""

from typing import Dict, Iterable

from clinical_store.search.types import SearchParameterDefinition
from clinical_store.search.types import SearchParameterType as T

ParameterTable = Dict[str, SearchParameterDefinition]

STU3 = "3_0_1"
R4 = "4_0_0"


def table(*definitions: SearchParameterDefinition) -> ParameterTable:
    """Index definitions by name."""
    return {definition.name: definition for definition in definitions}


def extend(base: ParameterTable, *definitions: SearchParameterDefinition) -> ParameterTable:
    """Copy ``base`` and add or replace the given definitions."""
    extended = dict(base)
    extended.update(table(*definitions))
    return extended


def without(base: ParameterTable, names: Iterable[str]) -> ParameterTable:
    """Copy ``base`` without the named parameters."""
    dropped = set(names)
    return {name: definition for name, definition in base.items() if name not in dropped}


D = SearchParameterDefinition

COMMON_SEARCH_PARAMS = table(
    D("_id", T.TOKEN, "id"),
    D("_lastUpdated", T.DATE, "meta.lastUpdated"),
)

# Parameters shared by resources with address and telecom elements
CONTACT_SEARCH_PARAMS = table(
    D("address", T.ADDRESS, "address"),
    D("address-city", T.STRING, "address.city"),
    D("address-country", T.STRING, "address.country"),
    D("address-postalcode", T.STRING, "address.postalCode"),
    D("address-state", T.STRING, "address.state"),
    D("address-use", T.TOKEN, "address.use"),
    D("email", T.TOKEN, "telecom", value_field="value", forced_system="email"),
    D("phone", T.TOKEN, "telecom", value_field="value", forced_system="phone"),
    D("telecom", T.TOKEN, "telecom", value_field="value"),
)

PATIENT_SEARCH_PARAMS_STU3 = extend(
    COMMON_SEARCH_PARAMS,
    *CONTACT_SEARCH_PARAMS.values(),
    D("active", T.BOOLEAN, "active"),
    D("animal-breed", T.TOKEN, "animal.breed.coding", value_field="code"),
    D("animal-species", T.TOKEN, "animal.species.coding", value_field="code"),
    D("birthdate", T.DATE, "birthDate", precision="date"),
    D("death-date", T.DATE, "deceasedDateTime"),
    D("deceased", T.BOOLEAN, "deceasedBoolean"),
    D("family", T.STRING, "name.family"),
    D("gender", T.TOKEN, "gender"),
    D(
        "general-practitioner",
        T.REFERENCE,
        "generalPractitioner",
        target_type="Practitioner",
    ),
    D("given", T.STRING, "name.given"),
    D("identifier", T.TOKEN, "identifier", value_field="value"),
    D("language", T.TOKEN, "communication.language.coding", value_field="code"),
    D("link", T.REFERENCE, "link.other", target_type="Patient"),
    D("name", T.NAME, "name"),
    D("organization", T.REFERENCE, "managingOrganization", target_type="Organization"),
)

# Patient.animal was removed in R4
PATIENT_SEARCH_PARAMS_R4 = without(
    PATIENT_SEARCH_PARAMS_STU3, ("animal-breed", "animal-species")
)

PRACTITIONER_SEARCH_PARAMS = extend(
    COMMON_SEARCH_PARAMS,
    *CONTACT_SEARCH_PARAMS.values(),
    D("active", T.BOOLEAN, "active"),
    D("communication", T.TOKEN, "communication.coding", value_field="code"),
    D("family", T.STRING, "name.family"),
    D("gender", T.TOKEN, "gender"),
    D("given", T.STRING, "name.given"),
    D("identifier", T.TOKEN, "identifier", value_field="value"),
    D("name", T.NAME, "name"),
)

ORGANIZATION_SEARCH_PARAMS = extend(
    COMMON_SEARCH_PARAMS,
    D("active", T.BOOLEAN, "active"),
    D("address", T.ADDRESS, "address"),
    D("address-city", T.STRING, "address.city"),
    D("address-country", T.STRING, "address.country"),
    D("address-postalcode", T.STRING, "address.postalCode"),
    D("address-state", T.STRING, "address.state"),
    D("address-use", T.TOKEN, "address.use"),
    D("endpoint", T.REFERENCE, "endpoint", target_type="Endpoint"),
    D("identifier", T.TOKEN, "identifier", value_field="value"),
    # Organization.name is a plain string, not a HumanName
    D("name", T.STRING, "name"),
    D("partof", T.REFERENCE, "partOf", target_type="Organization"),
    D("type", T.TOKEN, "type.coding", value_field="code"),
)

CONDITION_SEARCH_PARAMS_STU3 = extend(
    COMMON_SEARCH_PARAMS,
    D("abatement-age", T.QUANTITY, "abatementAge"),
    D("abatement-boolean", T.BOOLEAN, "abatementBoolean"),
    D("abatement-date", T.DATE, "abatementDateTime"),
    D("abatement-string", T.STRING, "abatementString"),
    D("asserted-date", T.DATE, "assertedDate", precision="date"),
    D("asserter", T.REFERENCE, "asserter", target_type="Practitioner"),
    D("body-site", T.TOKEN, "bodySite.coding", value_field="code"),
    D("category", T.TOKEN, "category.coding", value_field="code"),
    D("clinical-status", T.TOKEN, "clinicalStatus"),
    D("code", T.TOKEN, "code.coding", value_field="code"),
    D("context", T.REFERENCE, "context", target_type="Encounter"),
    D("evidence", T.TOKEN, "evidence.code.coding", value_field="code"),
    D("evidence-detail", T.REFERENCE, "evidence.detail"),
    D("identifier", T.TOKEN, "identifier", value_field="value"),
    D("onset-age", T.QUANTITY, "onsetAge"),
    D("onset-date", T.DATE, "onsetDateTime"),
    D("onset-info", T.STRING, "onsetString"),
    D("patient", T.REFERENCE, "subject", target_type="Patient"),
    D("severity", T.TOKEN, "severity.coding", value_field="code"),
    D("stage", T.TOKEN, "stage.summary.coding", value_field="code"),
    D("subject", T.REFERENCE, "subject", target_type="Patient"),
    D("verification-status", T.TOKEN, "verificationStatus"),
)

# R4 turned the statuses into CodeableConcepts, renamed assertedDate to
# recordedDate and context to encounter
CONDITION_SEARCH_PARAMS_R4 = extend(
    without(CONDITION_SEARCH_PARAMS_STU3, ("asserted-date", "context")),
    D("clinical-status", T.TOKEN, "clinicalStatus.coding", value_field="code"),
    D("encounter", T.REFERENCE, "encounter", target_type="Encounter"),
    D("recorded-date", T.DATE, "recordedDate"),
    D(
        "verification-status",
        T.TOKEN,
        "verificationStatus.coding",
        value_field="code",
    ),
)

DEVICE_USE_STATEMENT_SEARCH_PARAMS = extend(
    COMMON_SEARCH_PARAMS,
    D("device", T.REFERENCE, "device", target_type="Device"),
    D("identifier", T.TOKEN, "identifier", value_field="value"),
    D("patient", T.REFERENCE, "subject", target_type="Patient"),
    D("subject", T.REFERENCE, "subject", target_type="Patient"),
    D("timing", T.DATE, "timingPeriod", period=True),
)

SEARCH_PARAMETER_TABLES: Dict[str, Dict[str, ParameterTable]] = {
    STU3: {
        "Patient": PATIENT_SEARCH_PARAMS_STU3,
        "Practitioner": PRACTITIONER_SEARCH_PARAMS,
        "Organization": ORGANIZATION_SEARCH_PARAMS,
        "Condition": CONDITION_SEARCH_PARAMS_STU3,
        "DeviceUseStatement": DEVICE_USE_STATEMENT_SEARCH_PARAMS,
    },
    R4: {
        "Patient": PATIENT_SEARCH_PARAMS_R4,
        "Practitioner": PRACTITIONER_SEARCH_PARAMS,
        "Organization": ORGANIZATION_SEARCH_PARAMS,
        "Condition": CONDITION_SEARCH_PARAMS_R4,
        "DeviceUseStatement": DEVICE_USE_STATEMENT_SEARCH_PARAMS,
    },
}
