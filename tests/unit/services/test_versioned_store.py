"""Tests for the versioned resource store.

The stores come from ``conftest.py`` and run against mongomock-motor.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from clinical_store.core.exceptions import (
    ConflictError,
    DuplicateRecordError,
    InvalidArgumentError,
    StorageError,
    VersionConflictError,
)
from clinical_store.search.compiler import QueryCompiler
from clinical_store.search.parameters import PATIENT_SEARCH_PARAMS_R4
from clinical_store.search.registry import ResourceTypeRegistry
from clinical_store.services.versioned_store import (
    VersionedStore,
    history_key,
    utc_timestamp,
)
from clinical_store.storage.accessor import UpsertResult


@pytest.fixture
def registry():
    return ResourceTypeRegistry()


def search_args(registry, resource_type, base=None, **args):
    return registry.parse_arguments(resource_type, args, base)


@pytest.mark.versioning
class TestWriteLifecycle:
    """Create, update and remove with version and history bookkeeping."""

    @pytest.mark.asyncio
    async def test_create_then_read(self, patient_store, patient_fixture):
        result = await patient_store.create("example", patient_fixture)
        assert result.as_dict() == {"id": "example"}

        record = await patient_store.search_by_id("example")
        assert record["id"] == "example"
        assert record["meta"]["versionId"] == "1"
        assert "lastUpdated" in record["meta"]
        assert "_id" not in record

        history = await patient_store.history_by_id("example")
        assert [entry["meta"]["versionId"] for entry in history] == ["1"]

    @pytest.mark.asyncio
    async def test_create_uses_the_given_id(self, patient_store, patient_fixture):
        await patient_store.create("other", patient_fixture)
        record = await patient_store.search_by_id("other")
        assert record["id"] == "other"
        assert await patient_store.search_by_id("example") is None

    @pytest.mark.asyncio
    async def test_create_does_not_overwrite(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)
        with pytest.raises(ConflictError):
            await patient_store.create("example", {"gender": "female"})

        record = await patient_store.search_by_id("example")
        assert record["gender"] == "male"
        assert len(await patient_store.history_by_id("example")) == 1

    @pytest.mark.asyncio
    async def test_condition_scenario(self, condition_store):
        await condition_store.create("0", {"text": {"status": "generated"}})

        result = await condition_store.update("0", {"text": {"status": "preliminary"}})
        assert result.as_dict() == {"id": "0", "created": False, "resourceVersion": "2"}

        current = await condition_store.search_by_id("0")
        assert current["text"]["status"] == "preliminary"

        first = await condition_store.search_by_version_id("0", "1")
        assert first["text"]["status"] == "generated"

    @pytest.mark.asyncio
    async def test_update_without_current_creates_version_one(self, patient_store):
        result = await patient_store.update("new", {"gender": "female"})
        assert result.as_dict() == {"id": "new", "created": True, "resourceVersion": "1"}
        assert len(await patient_store.history_by_id("new")) == 1

    @pytest.mark.asyncio
    async def test_update_increments_version(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)
        for expected in ("2", "3", "4"):
            patient_fixture["active"] = not patient_fixture["active"]
            result = await patient_store.update("example", patient_fixture)
            assert result.resource_version == expected

        current = await patient_store.search_by_id("example")
        assert current["meta"]["versionId"] == "4"
        assert await patient_store.search_by_version_id("example", "4") == current

        history = await patient_store.history_by_id("example")
        assert sorted(entry["meta"]["versionId"] for entry in history) == [
            "1",
            "2",
            "3",
            "4",
        ]

    @pytest.mark.asyncio
    async def test_update_keeps_meta_except_version(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)
        before = await patient_store.search_by_id("example")

        await patient_store.update("example", {"gender": "other"})
        after = await patient_store.search_by_id("example")
        assert after["meta"]["lastUpdated"] == before["meta"]["lastUpdated"]
        assert after["meta"]["versionId"] == "2"
        assert "name" not in after

    @pytest.mark.asyncio
    async def test_update_ignores_payload_meta_and_id(self, patient_store):
        await patient_store.create("example", {"gender": "male"})
        result = await patient_store.update(
            "example", {"id": "spoofed", "meta": {"versionId": "99"}}
        )
        assert result.resource_version == "2"
        record = await patient_store.search_by_id("example")
        assert record["id"] == "example"

    @pytest.mark.asyncio
    async def test_remove_cascades_to_history(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)
        await patient_store.update("example", patient_fixture)

        result = await patient_store.remove("example")
        assert result.as_dict() == {"deleted": 1}
        assert await patient_store.search_by_id("example") is None
        assert await patient_store.history_by_id("example") == []
        assert await patient_store.search_by_version_id("example", "1") is None

    @pytest.mark.asyncio
    async def test_remove_missing_id(self, patient_store):
        result = await patient_store.remove("nope")
        assert result.as_dict() == {"deleted": 0}

    @pytest.mark.asyncio
    async def test_recreate_after_remove_restarts_history(self, patient_store):
        await patient_store.create("example", {"gender": "male"})
        await patient_store.update("example", {"gender": "female"})
        await patient_store.remove("example")

        await patient_store.create("example", {"gender": "other"})
        history = await patient_store.history_by_id("example")
        assert [entry["gender"] for entry in history] == ["other"]

    @pytest.mark.asyncio
    async def test_payload_is_not_mutated(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)
        assert "meta" not in patient_fixture

    @pytest.mark.asyncio
    async def test_non_mapping_payload_fails(self, patient_store):
        with pytest.raises(InvalidArgumentError):
            await patient_store.create("example", ["not", "a", "resource"])

    @pytest.mark.asyncio
    async def test_count(self, patient_store):
        assert await patient_store.count() == 0
        await patient_store.create("a", {"gender": "male"})
        await patient_store.create("b", {"gender": "female"})
        await patient_store.update("a", {"gender": "other"})
        assert await patient_store.count() == 2


@pytest.mark.versioning
class TestPatch:
    """JSON Patch writes through the versioned write path."""

    @pytest.mark.asyncio
    async def test_patch_writes_next_version(self, patient_store, patient_fixture):
        await patient_store.create("example", patient_fixture)

        result = await patient_store.patch(
            "example",
            [
                {"op": "replace", "path": "/gender", "value": "female"},
                {"op": "add", "path": "/name/0/given/-", "value": "Jim"},
            ],
        )
        assert result.as_dict() == {
            "id": "example",
            "created": False,
            "resourceVersion": "2",
        }

        current = await patient_store.search_by_id("example")
        assert current["gender"] == "female"
        assert current["name"][0]["given"] == ["Peter", "James", "Jim"]
        assert current["birthDate"] == "1974-12-25"
        assert await patient_store.search_by_version_id("example", "2") == current

        first = await patient_store.search_by_version_id("example", "1")
        assert first["gender"] == "male"
        assert len(await patient_store.history_by_id("example")) == 2

    @pytest.mark.asyncio
    async def test_patch_accepts_json_text(self, patient_store):
        await patient_store.create("example", {"gender": "male"})
        result = await patient_store.patch(
            "example", '[{"op": "replace", "path": "/gender", "value": "other"}]'
        )
        assert result.resource_version == "2"
        assert (await patient_store.search_by_id("example"))["gender"] == "other"

    @pytest.mark.asyncio
    async def test_patch_cannot_move_id_or_version(self, patient_store):
        await patient_store.create("example", {"gender": "male"})
        await patient_store.patch(
            "example",
            [
                {"op": "replace", "path": "/id", "value": "other"},
                {"op": "replace", "path": "/meta/versionId", "value": "7"},
            ],
        )
        record = await patient_store.search_by_id("example")
        assert record["id"] == "example"
        assert record["meta"]["versionId"] == "2"

    @pytest.mark.asyncio
    async def test_patch_missing_record_is_a_conflict(self, patient_store):
        with pytest.raises(ConflictError):
            await patient_store.patch(
                "nope", [{"op": "add", "path": "/gender", "value": "male"}]
            )
        assert await patient_store.count() == 0
        assert await patient_store.history_by_id("nope") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operations",
        [
            [{"op": "test", "path": "/gender", "value": "female"}],
            [{"op": "remove", "path": "/deceasedBoolean"}],
            [{"op": "frobnicate", "path": "/gender"}],
            [{"op": "replace", "path": "gender", "value": "female"}],
            [42],
            {"op": "replace", "path": "/gender", "value": "female"},
            "not json",
        ],
    )
    async def test_bad_patch_leaves_record_alone(self, patient_store, operations):
        await patient_store.create("example", {"gender": "male"})

        with pytest.raises(InvalidArgumentError):
            await patient_store.patch("example", operations)

        record = await patient_store.search_by_id("example")
        assert record["meta"]["versionId"] == "1"
        assert len(await patient_store.history_by_id("example")) == 1

    @pytest.mark.asyncio
    async def test_patch_and_update_are_serialized(self, patient_store):
        await patient_store.create("example", {"gender": "male"})

        results = await asyncio.gather(
            patient_store.patch(
                "example", [{"op": "add", "path": "/active", "value": True}]
            ),
            patient_store.update("example", {"gender": "female"}),
        )

        assert sorted(r.resource_version for r in results) == ["2", "3"]
        assert len(await patient_store.history_by_id("example")) == 3


@pytest.mark.versioning
class TestConcurrentWrites:
    """Writes racing on the same id."""

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_serialized(self, patient_store):
        await patient_store.create("example", {"gender": "male"})

        results = await asyncio.gather(
            *(patient_store.update("example", {"gender": str(i)}) for i in range(5))
        )

        assert sorted(int(r.resource_version) for r in results) == [2, 3, 4, 5, 6]
        current = await patient_store.search_by_id("example")
        assert current["meta"]["versionId"] == "6"
        assert len(await patient_store.history_by_id("example")) == 6

    @pytest.mark.asyncio
    async def test_concurrent_creates_single_winner(self, patient_store):
        outcomes = await asyncio.gather(
            patient_store.create("example", {"gender": "male"}),
            patient_store.create("example", {"gender": "female"}),
            return_exceptions=True,
        )
        assert sum(isinstance(o, ConflictError) for o in outcomes) == 1
        assert await patient_store.count() == 1

    @pytest.mark.asyncio
    async def test_locks_are_released(self, patient_store):
        await asyncio.gather(
            patient_store.update("a", {}),
            patient_store.update("b", {}),
            patient_store.remove("a"),
        )
        assert len(patient_store._locks) == 0


@pytest.mark.versioning
class TestInterruptedWrites:
    """Recovery from a write that stopped between history and promotion."""

    @pytest.mark.asyncio
    async def test_orphaned_history_is_replaced(self, patient_store, mongo_client, settings):
        await patient_store.create("example", {"gender": "male"})
        history = mongo_client[settings.mongo_database]["PatientHistory"]
        await history.insert_one(
            {
                "_id": history_key("example", "2"),
                "id": "example",
                "gender": "lost",
                "meta": {"versionId": "2"},
            }
        )

        result = await patient_store.update("example", {"gender": "female"})
        assert result.resource_version == "2"

        second = await patient_store.search_by_version_id("example", "2")
        assert second["gender"] == "female"
        assert len(await patient_store.history_by_id("example")) == 2

    @pytest.mark.asyncio
    async def test_history_of_promoted_version_is_a_conflict(self):
        current = AsyncMock()
        # another process promoted version 2 after our read
        current.find_one.side_effect = [
            {"id": "example", "meta": {"versionId": "1"}},
            {"id": "example", "meta": {"versionId": "2"}},
        ]
        history = AsyncMock()
        history.insert.side_effect = DuplicateRecordError("dup")
        history.find_one.return_value = {"id": "example", "meta": {"versionId": "2"}}
        store = VersionedStore(
            "Patient", current, history, QueryCompiler(PATIENT_SEARCH_PARAMS_R4)
        )

        with pytest.raises(ConflictError):
            await store.update("example", {"gender": "female"})
        current.find_one_and_update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_promotion_is_a_version_conflict(self):
        current = AsyncMock()
        current.find_one.return_value = {"id": "example", "meta": {"versionId": "1"}}
        history = AsyncMock()
        store = VersionedStore(
            "Patient", current, history, QueryCompiler(PATIENT_SEARCH_PARAMS_R4)
        )

        current.find_one_and_update.side_effect = DuplicateRecordError("dup")
        with pytest.raises(VersionConflictError):
            await store.update("example", {"gender": "female"})

        condition = current.find_one_and_update.await_args.args[0]
        assert condition == {"id": "example", "meta.versionId": "1"}
        history.insert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_failure_is_a_conflict(self):
        current = AsyncMock()
        current.remove.return_value = 1
        history = AsyncMock()
        history.remove.side_effect = StorageError("boom")
        store = VersionedStore(
            "Patient", current, history, QueryCompiler(PATIENT_SEARCH_PARAMS_R4)
        )

        with pytest.raises(ConflictError):
            await store.remove("example")

    @pytest.mark.asyncio
    async def test_non_numeric_version_fails(self):
        current = AsyncMock()
        current.find_one.return_value = {"id": "x", "meta": {"versionId": "abc"}}
        store = VersionedStore(
            "Patient", current, AsyncMock(), QueryCompiler(PATIENT_SEARCH_PARAMS_R4)
        )
        with pytest.raises(StorageError):
            await store.update("x", {})


@pytest.mark.fhir_compliance
class TestSearch:
    """Searches evaluated by the in-memory MongoDB engine."""

    @pytest.mark.asyncio
    async def test_empty_search_returns_everything(self, patient_store):
        await patient_store.create("a", {"gender": "male"})
        await patient_store.create("b", {"gender": "female"})
        assert len(await patient_store.search([])) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args,matches",
        [
            ({"family": "chal"}, True),
            ({"family:exact": "chalmers"}, False),
            ({"given:contains": "ame"}, True),
            ({"name": "Pet"}, True),
            ({"name": "Chalmers", "address": "Pleasant"}, True),
            ({"name": "Chalmers", "address": "Ann Arbor"}, False),
            ({"email": "peter@example.org"}, True),
            ({"phone": "(03) 5555 6473"}, True),
            ({"gender": "male"}, True),
            ({"birthdate": "1974-12"}, True),
            ({"birthdate": "gt1974-12-25"}, False),
            ({"birthdate": "ne1974"}, False),
            ({"organization": "1"}, True),
            ({"general-practitioner": "Practitioner/f223"}, True),
            ({"active": "false"}, False),
            ({"_id": "example"}, True),
        ],
    )
    async def test_patient(self, patient_store, patient_fixture, registry, args, matches):
        await patient_store.create("example", patient_fixture)
        found = await patient_store.search(search_args(registry, "Patient", **args))
        assert [r["id"] for r in found] == (["example"] if matches else [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args,matches",
        [
            ({"address": "Ann Arbor"}, True),
            ({"address": "48104"}, True),
            ({"address": "Arbor"}, False),
            ({"address-city": "ann"}, True),
            ({"name": "Health Level"}, True),
            ({"partof": "1"}, True),
            ({"type": "prov"}, True),
            ({"identifier": "http://hl7.org.fhir/sid/us-npi|1144221847"}, True),
            ({"active": "false"}, True),
        ],
    )
    async def test_organization(
        self, organization_store, organization_fixture, registry, args, matches
    ):
        resource_id = organization_fixture["id"]
        await organization_store.create(resource_id, organization_fixture)
        found = await organization_store.search(
            search_args(registry, "Organization", **args)
        )
        assert [r["id"] for r in found] == ([resource_id] if matches else [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args,matches",
        [
            ({"code": "442311008"}, True),
            ({"code": "http://snomed.info/sct|442311008"}, True),
            ({"code": "http://loinc.org|442311008"}, False),
            ({"clinical-status": "active"}, True),
            ({"asserted-date": "2016-08-10"}, True),
            ({"asserted-date": "ge2016-08-10"}, True),
            ({"asserted-date": "ge2016-08-11"}, False),
            ({"asserted-date": "lt2016-08-10"}, False),
            ({"onset-date": "2013-04-02"}, True),
            ({"abatement-age": "56|http://snomed.info/sct|yr"}, True),
            ({"abatement-age": "lt50"}, False),
            ({"patient": "example"}, True),
            ({"subject": "Patient/other"}, False),
            ({"context": "f203"}, True),
            ({"evidence-detail": "Observation/f202"}, True),
            ({"stage": "14803004"}, True),
            ({"body-site": "51185008"}, True),
        ],
    )
    async def test_condition(
        self, condition_store, condition_fixture, registry, args, matches
    ):
        await condition_store.create("0", condition_fixture)
        found = await condition_store.search(
            search_args(registry, "Condition", "3_0_1", **args)
        )
        assert [r["id"] for r in found] == (["0"] if matches else [])

    @pytest.mark.asyncio
    async def test_history_search_returns_every_version(self, condition_store, registry):
        await condition_store.create("0", {"clinicalStatus": "active"})
        await condition_store.update("0", {"clinicalStatus": "resolved"})
        await condition_store.create("1", {"clinicalStatus": "active"})

        params = search_args(registry, "Condition", "3_0_1", **{"clinical-status": "active"})
        assert [r["id"] for r in await condition_store.search(params)] == ["1"]

        history = await condition_store.history(params)
        assert sorted(r["id"] for r in history) == ["0", "1"]

        everything = await condition_store.history([])
        assert len(everything) == 3


class TestHelpers:
    """Module-level helpers."""

    def test_history_key(self):
        assert history_key("example", "3") == "example_3"

    def test_utc_timestamp(self):
        stamp = utc_timestamp()
        assert stamp.endswith("+00:00")
        assert len(stamp) == len("2016-08-10T04:30:44+00:00")

    @pytest.mark.asyncio
    async def test_update_result_created_flag(self):
        current = AsyncMock()
        current.find_one.return_value = None
        current.find_one_and_update.return_value = UpsertResult(None, True)
        store = VersionedStore(
            "Patient", current, AsyncMock(), QueryCompiler(PATIENT_SEARCH_PARAMS_R4)
        )
        result = await store.update("x", {})
        assert result.created is True
