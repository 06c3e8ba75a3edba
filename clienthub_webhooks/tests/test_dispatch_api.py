from sqlalchemy import select

from clienthub_webhooks.models.dispatcher_run import DispatcherRun


async def test_dispatch_requires_internal_secret(client, receiver, make_destination, make_queued_event):
    dest = await make_destination()
    await make_queued_event(dest)

    r = await client.post("/dispatch")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized: Invalid or missing internal secret"}

    r = await client.post("/dispatch", headers={"X-Internal-Secret": "wrong"})
    assert r.status_code == 401
    assert receiver.requests == []


async def test_dispatch_with_empty_queue(client, internal_headers):
    r = await client.post("/dispatch", headers=internal_headers)
    assert r.status_code == 200
    assert r.json() == {"message": "No pending webhook events", "processed": 0}


async def test_dispatch_processes_due_events(
    client, internal_headers, receiver, make_destination, make_queued_event
):
    dest = await make_destination()
    await make_queued_event(dest)
    await make_queued_event(dest)

    r = await client.post("/dispatch", headers=internal_headers)
    assert r.status_code == 200
    assert r.json() == {"message": "Webhook events processed", "processed": 2}
    assert len(receiver.requests) == 2

    # Nothing left for the next cycle
    r = await client.post("/dispatch", headers=internal_headers)
    assert r.json()["processed"] == 0


async def test_dispatch_records_trigger_source(client, internal_headers, session_factory):
    r = await client.post("/dispatch", headers=internal_headers, json={"triggered_by": "cron"})
    assert r.status_code == 200

    async with session_factory() as session:
        run = (await session.execute(select(DispatcherRun))).scalar_one()
    assert run.triggered_by == "cron"
    assert run.success is True


async def test_dispatch_reports_cycle_errors(client, internal_headers, mocker):
    mocker.patch(
        "clienthub_webhooks.api.routes.dispatch.execute_dispatch",
        side_effect=RuntimeError("claim failed"),
    )
    r = await client.post("/dispatch", headers=internal_headers)
    assert r.status_code == 500
    assert r.json() == {"error": "claim failed"}


async def test_dispatcher_status(client, internal_headers, make_destination, make_queued_event):
    r = await client.get("/dispatch/status")
    assert r.status_code == 200
    body = r.json()
    assert body["pending_events"] == 0
    assert body["last_run_at"] is None

    dest = await make_destination()
    await make_queued_event(dest)
    await make_queued_event(dest, status="failed")

    r = await client.get("/dispatch/status")
    assert r.json()["pending_events"] == 1

    await client.post("/dispatch", headers=internal_headers)
    body = (await client.get("/dispatch/status")).json()
    assert body["pending_events"] == 0
    assert body["last_run_success"] is True
    assert body["last_run_at"] is not None


async def test_dispatch_ignores_undecodable_body(client, internal_headers):
    r = await client.post(
        "/dispatch",
        headers={**internal_headers, "Content-Type": "application/json"},
        content=b"\x80\x81 not utf-8",
    )
    assert r.status_code == 200
    assert r.json() == {"message": "No pending webhook events", "processed": 0}
