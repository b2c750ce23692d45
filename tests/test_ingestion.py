import uuid

import pytest

from syncjobs.v1.core.exceptions import ValidationError
from syncjobs.v1.ingestion.normalize import (
    EventNormalizer,
    GenericNormalizer,
    MessageNormalizer,
    parse_timestamp,
)
from syncjobs.v1.ingestion.service import (
    IngestionFields,
    IngestionItem,
    IngestionService,
)
from syncjobs.v1.jobs.exceptions import MalformedPayloadError


@pytest.fixture
def ingestion(test_settings):
    return IngestionService(test_settings)


async def test_upsert_is_idempotent(ingestion, session, owner_id):
    first_id = await ingestion.upsert(
        session,
        owner_id,
        "provider_a",
        "msg-1",
        IngestionFields(payload={"subject": "v1"}, batch_id="b-1"),
    )
    second_id = await ingestion.upsert(
        session,
        owner_id,
        "provider_a",
        "msg-1",
        IngestionFields(payload={"subject": "v2"}),
    )

    record = await ingestion.get_record(session, owner_id, first_id)
    assert second_id == first_id
    assert record.payload == {"subject": "v2"}
    # A later sync without a batch keeps the original batch
    assert record.batch_id == "b-1"
    _, total = await ingestion.list_records(session, owner_id)
    assert total == 1


async def test_same_source_id_in_other_source_is_separate(ingestion, session, owner_id):
    a = await ingestion.upsert(
        session, owner_id, "provider_a", "42", IngestionFields(payload={})
    )
    b = await ingestion.upsert(
        session, owner_id, "provider_b", "42", IngestionFields(payload={})
    )

    assert a != b


async def test_existing_link_survives_reingestion(ingestion, session, owner_id):
    entity_id = uuid.uuid4()
    record_id = await ingestion.upsert(
        session, owner_id, "provider_a", "msg-2", IngestionFields(payload={})
    )
    assert await ingestion.link_entity(session, owner_id, record_id, entity_id)

    await ingestion.upsert(
        session,
        owner_id,
        "provider_a",
        "msg-2",
        IngestionFields(payload={"subject": "again"}, linked_entity_id=uuid.uuid4()),
    )

    record = await ingestion.get_record(session, owner_id, record_id)
    assert record.linked_entity_id == entity_id


async def test_upsert_requires_identity(ingestion, session, owner_id):
    with pytest.raises(ValidationError):
        await ingestion.upsert(session, owner_id, "provider_a", "", IngestionFields())


async def test_upsert_many_and_normalize(ingestion, session, owner_id):
    items = [
        IngestionItem(
            source_id=f"msg-{n}",
            payload={"from": "Ann@Example.com", "to": "bob@example.com", "subject": f"S{n}"},
        )
        for n in range(3)
    ]
    record_ids = await ingestion.upsert_many(
        session, owner_id, "provider_a", items, batch_id="b-7"
    )

    normalized = await ingestion.normalize_records(session, owner_id, record_ids)

    assert sorted(normalized) == sorted(record_ids)
    records, total = await ingestion.list_records(session, owner_id, batch_id="b-7")
    assert total == 3
    for record in records:
        assert record.normalized["source_kind"] == "message"
        assert record.normalized["participants"] == ["ann@example.com", "bob@example.com"]
        assert record.normalized_at is not None
    pending, _ = await ingestion.list_records(session, owner_id, pending_only=True)
    assert pending == []


async def test_reingestion_marks_record_pending_again(ingestion, session, owner_id):
    record_id = await ingestion.upsert(
        session, owner_id, "provider_a", "msg-9", IngestionFields(payload={"from": "a@x.io"})
    )
    await ingestion.normalize_records(session, owner_id, [record_id])

    await ingestion.upsert(
        session, owner_id, "provider_a", "msg-9", IngestionFields(payload={"from": "b@x.io"})
    )

    pending, _ = await ingestion.list_records(session, owner_id, pending_only=True)
    assert [r.id for r in pending] == [record_id]


async def test_malformed_record_fails_normalization(ingestion, session, owner_id):
    record_id = await ingestion.upsert(
        session, owner_id, "provider_a", "msg-3", IngestionFields(payload={"subject": "x"})
    )

    with pytest.raises(MalformedPayloadError, match="missing 'from'"):
        await ingestion.normalize_records(session, owner_id, [record_id])


async def test_records_are_owner_scoped(ingestion, session, owner_id):
    record_id = await ingestion.upsert(
        session, owner_id, "provider_a", "msg-4", IngestionFields(payload={})
    )

    assert await ingestion.get_record(session, uuid.uuid4(), record_id) is None


def test_event_normalizer():
    result = EventNormalizer().normalize(
        {
            "summary": "Standup",
            "start": "2024-06-01T09:00:00Z",
            "end": "2024-06-01T09:15:00Z",
            "attendees": ["Ann@example.com"],
        },
        {},
    )

    assert result["source_kind"] == "event"
    assert result["occurred_at"] == "2024-06-01T09:00:00+00:00"
    assert result["participants"] == ["ann@example.com"]


def test_event_ending_before_start_is_malformed():
    with pytest.raises(MalformedPayloadError, match="ends before it starts"):
        EventNormalizer().normalize(
            {"start": "2024-06-01T10:00:00Z", "end": "2024-06-01T09:00:00Z"}, {}
        )


def test_message_normalizer_defaults():
    result = MessageNormalizer().normalize({"from": "a@x.io"}, {})

    assert result["title"] == "(no subject)"
    assert result["body"] == ""
    assert result["occurred_at"] is None


def test_generic_normalizer():
    result = GenericNormalizer().normalize({"title": "Note", "text": "hello"}, {})

    assert result == {
        "source_kind": "item",
        "title": "Note",
        "body": "hello",
        "participants": [],
        "occurred_at": None,
    }


def test_parse_timestamp():
    assert parse_timestamp(None) is None
    assert parse_timestamp(0).isoformat() == "1970-01-01T00:00:00+00:00"
    assert parse_timestamp("2024-06-01T12:00:00").tzinfo is not None
    with pytest.raises(MalformedPayloadError, match="Invalid timestamp format"):
        parse_timestamp("yesterday")
