from sqlalchemy import select

from clienthub_webhooks.models.queued_event import QueuedEvent
from clienthub_webhooks.services.producer import build_event_payload, emit_event


async def _queued_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(QueuedEvent))
        return result.scalars().all()


def test_build_event_payload_shape():
    payload = build_event_payload("client.updated", {"id": "c1"}, previous_values={"name": "Old"})
    assert payload["event_id"].startswith("evt_")
    assert payload["event_type"] == "client.updated"
    assert payload["timestamp"].endswith("Z")
    assert payload["test"] is False
    assert payload["data"] == {"id": "c1"}
    assert payload["previous_values"] == {"name": "Old"}
    assert "previous_values" not in build_event_payload("client.created", {})


async def test_emit_event_queues_one_row_per_subscribed_destination(
    async_db_session, session_factory, make_destination
):
    a = await make_destination(name="A")
    b = await make_destination(name="B", events=["client.created", "task.created"])
    await make_destination(name="C", events=["task.created"])
    await make_destination(name="D", enabled=False)

    event_id, queued = await emit_event(async_db_session, "client.created", {"id": "c1"})
    await async_db_session.commit()

    assert queued == 2
    rows = await _queued_rows(session_factory)
    assert {row.webhook_id for row in rows} == {a.id, b.id}
    for row in rows:
        assert row.event_id == event_id
        assert row.status == "pending"
        assert row.attempts == 0
        assert row.max_attempts == 5
        assert row.payload["data"] == {"id": "c1"}
    assert rows[0].payload == rows[1].payload


async def test_ingest_requires_internal_secret(client):
    r = await client.post("/events", json={"event_type": "client.created", "data": {}})
    assert r.status_code == 401


async def test_ingest_rejects_unknown_event_type(client, internal_headers):
    r = await client.post(
        "/events",
        headers=internal_headers,
        json={"event_type": "invoice.paid", "data": {}},
    )
    assert r.status_code == 422


async def test_ingest_queues_and_requests_dispatch(
    client, internal_headers, session_factory, make_destination, mocker
):
    mock_request = mocker.patch(
        "clienthub_webhooks.api.routes.events.request_dispatch",
        return_value=True,
    )
    await make_destination()

    r = await client.post(
        "/events",
        headers=internal_headers,
        json={
            "event_type": "client.updated",
            "data": {"id": "c1", "name": "New"},
            "previous_values": {"name": "Old"},
        },
    )

    assert r.status_code == 202
    body = r.json()
    assert body["queued"] == 1
    assert body["dispatch_requested"] is True
    mock_request.assert_called_once_with("producer")

    rows = await _queued_rows(session_factory)
    assert len(rows) == 1
    assert rows[0].event_id == body["event_id"]
    assert rows[0].payload["previous_values"] == {"name": "Old"}


async def test_ingest_without_subscribers_skips_dispatch(
    client, internal_headers, make_destination, mocker
):
    mock_request = mocker.patch("clienthub_webhooks.api.routes.events.request_dispatch")
    await make_destination(events=["task.created"])

    r = await client.post(
        "/events",
        headers=internal_headers,
        json={"event_type": "client.deleted", "data": {"id": "c1"}},
    )

    assert r.status_code == 202
    assert r.json()["queued"] == 0
    assert r.json()["dispatch_requested"] is False
    mock_request.assert_not_called()
