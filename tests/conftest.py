"""Test configuration for the Clinical Store project.

Stores under test run against an in-memory MongoDB (mongomock-motor)
behind the real MongoCollectionAccessor, so compiled filters are
evaluated by a MongoDB query engine.
"""

import copy
from typing import Any, Dict

import pytest
from mongomock_motor import AsyncMongoMockClient

from clinical_store.config import Settings
from clinical_store.services import StoreManager
from clinical_store.storage import MongoConnection


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "fhir_compliance: mark test as checking FHIR search semantics"
    )
    config.addinivalue_line(
        "markers", "versioning: mark test as checking version/history invariants"
    )
    config.addinivalue_line("markers", "storage: mark test as touching storage")


CONDITION_FIXTURE: Dict[str, Any] = {
    "resourceType": "Condition",
    "id": "0",
    "text": {"status": "generated", "div": "<div>Fever, resolved</div>"},
    "clinicalStatus": "active",
    "verificationStatus": "confirmed",
    "category": [
        {
            "coding": [
                {
                    "system": "http://hl7.org/fhir/us/core/CodeSystem/condition-category",
                    "code": "problem",
                }
            ]
        }
    ],
    "severity": {"coding": [{"system": "http://snomed.info/sct", "code": "255604002"}]},
    "code": {"coding": [{"system": "http://snomed.info/sct", "code": "442311008"}]},
    "bodySite": [
        {"coding": [{"system": "http://snomed.info/sct", "code": "51185008"}]}
    ],
    "subject": {"reference": "Patient/example"},
    "context": {"reference": "Encounter/f203"},
    "onsetDateTime": "2013-04-02T04:30",
    "abatementAge": {
        "value": 56,
        "system": "http://snomed.info/sct",
        "code": "yr",
    },
    "assertedDate": "2016-08-10",
    "asserter": {"reference": "Practitioner/f223"},
    "stage": {
        "summary": {"coding": [{"system": "http://snomed.info/sct", "code": "14803004"}]}
    },
    "evidence": [
        {
            "code": [{"coding": [{"system": "http://snomed.info/sct", "code": "169068008"}]}],
            "detail": [{"reference": "Observation/f202"}],
        }
    ],
    "identifier": [{"value": "12345"}],
}

ORGANIZATION_FIXTURE: Dict[str, Any] = {
    "resourceType": "Organization",
    "id": "1832473e-2fe0-452d-abe9-3cdb9879522f",
    "text": {"status": "generated", "div": "<div>Health Level Seven</div>"},
    "identifier": [{"system": "http://hl7.org.fhir/sid/us-npi", "value": "1144221847"}],
    "active": False,
    "type": [{"coding": [{"system": "http://hl7.org/fhir/organization-type", "code": "prov"}]}],
    "name": "Health Level Seven International",
    "address": [
        {
            "use": "work",
            "line": ["3300 Washtenaw Avenue, Suite 227"],
            "city": "Ann Arbor",
            "state": "MI",
            "postalCode": "48104",
            "country": "USA",
        }
    ],
    "partOf": {"reference": "Organization/1"},
    "endpoint": [{"reference": "Endpoint/example"}],
}

PATIENT_FIXTURE: Dict[str, Any] = {
    "resourceType": "Patient",
    "id": "example",
    "active": True,
    "name": [{"use": "official", "family": "Chalmers", "given": ["Peter", "James"]}],
    "telecom": [
        {"system": "phone", "value": "(03) 5555 6473", "use": "work"},
        {"system": "email", "value": "peter@example.org"},
    ],
    "gender": "male",
    "birthDate": "1974-12-25",
    "address": [
        {
            "line": ["534 Erewhon St"],
            "city": "PleasantVille",
            "state": "Vic",
            "postalCode": "3999",
            "country": "Australia",
        }
    ],
    "managingOrganization": {"reference": "Organization/1"},
    "generalPractitioner": [{"reference": "Practitioner/f223"}],
}


@pytest.fixture
def condition_fixture() -> Dict[str, Any]:
    return copy.deepcopy(CONDITION_FIXTURE)


@pytest.fixture
def organization_fixture() -> Dict[str, Any]:
    return copy.deepcopy(ORGANIZATION_FIXTURE)


@pytest.fixture
def patient_fixture() -> Dict[str, Any]:
    return copy.deepcopy(PATIENT_FIXTURE)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's environment."""
    return Settings(
        _env_file=None,
        mongo_database="clinical_store_test",
        mongo_read_retries=1,
        mongo_retry_delay=0,
    )


@pytest.fixture
def mongo_client() -> AsyncMongoMockClient:
    return AsyncMongoMockClient()


@pytest.fixture
def connection(settings, mongo_client) -> MongoConnection:
    return MongoConnection(settings, client=mongo_client)


@pytest.fixture
def manager(settings, connection) -> StoreManager:
    return StoreManager(settings, connection)


@pytest.fixture
def patient_store(manager):
    return manager.store("Patient")


@pytest.fixture
def condition_store(manager):
    return manager.store("Condition", "3_0_1")


@pytest.fixture
def organization_store(manager):
    return manager.store("Organization")
