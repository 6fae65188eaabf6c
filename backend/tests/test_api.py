"""HTTP API tests (httpx AsyncClient over the ASGI app)."""

from datetime import timedelta

import pytest

from core.constants import FlowStatus, RunStatus

V1 = "/api/v1"


@pytest.mark.integration
class TestHealthEndpoints:
    async def test_liveness(self, client):
        response = await client.get("/api/health/")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["app"] == "Campaign Execution Engine"
        assert "uptime_seconds" in body

    async def test_readiness(self, client):
        response = await client.get("/api/health/ready")

        assert response.status_code == 200
        assert response.json()["database"] == "ok"

    async def test_request_id_is_echoed(self, client):
        response = await client.get("/api/health/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-Process-Time" in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.integration
class TestValidateEndpoint:
    async def test_valid_definition(self, client, welcome_definition):
        response = await client.post(f"{V1}/flows/validate", json={"definition": welcome_definition})

        assert response.status_code == 200
        assert response.json() == {"valid": True, "error": None, "warnings": []}

    async def test_invalid_definition_is_still_200(self, client):
        response = await client.post(
            f"{V1}/flows/validate",
            json={"definition": {"nodes": [{"id": "a", "type": "teleport"}], "edges": []}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert "teleport" in body["error"]

    async def test_malformed_node_is_still_200(self, client):
        response = await client.post(
            f"{V1}/flows/validate",
            json={"definition": {"nodes": [{"id": ["s"], "type": "start"}], "edges": []}},
        )

        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert "must be a string" in response.json()["error"]

    async def test_warnings_are_reported(self, client):
        definition = {
            "nodes": [
                {"id": "s", "type": "start"},
                {"id": "c", "type": "condition", "data": {"predicateType": "action_opened"}},
                {"id": "e", "type": "end"},
            ],
            "edges": [
                {"source": "s", "target": "c"},
                {"source": "c", "target": "e"},
            ],
        }

        body = (await client.post(f"{V1}/flows/validate", json={"definition": definition})).json()

        assert body["valid"] is True
        assert len(body["warnings"]) == 2


@pytest.mark.integration
class TestStartRunEndpoint:
    async def test_start_run_is_accepted(self, client, make_flow, linear_definition, delivery):
        flow = await make_flow(linear_definition)

        response = await client.post(
            f"{V1}/flows/{flow.id}/runs",
            json={"subject_id": "sub-1", "subject_context": {"email": "ann@example.com"}},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["flow_id"] == flow.id
        assert body["job_id"]
        assert len(delivery.calls) == 2

    async def test_started_run_is_listed(self, client, make_flow, linear_definition):
        flow = await make_flow(linear_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-2"})

        response = await client.get(f"{V1}/flows/{flow.id}/runs")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {r["subject_id"] for r in body["runs"]} == {"sub-1", "sub-2"}
        assert all(r["status"] == RunStatus.COMPLETED.value for r in body["runs"])

    async def test_list_filters_by_status(self, client, make_flow, linear_definition):
        flow = await make_flow(linear_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})

        active = await client.get(f"{V1}/flows/{flow.id}/runs", params={"status": "active"})
        bogus = await client.get(f"{V1}/flows/{flow.id}/runs", params={"status": "sleeping"})

        assert active.json()["total"] == 0
        assert bogus.status_code == 422

    async def test_unknown_flow(self, client):
        response = await client.post(f"{V1}/flows/missing/runs", json={"subject_id": "sub-1"})

        assert response.status_code == 404
        assert "request_id" in response.json()

    async def test_paused_flow_conflicts(self, client, make_flow, linear_definition):
        flow = await make_flow(linear_definition, status=FlowStatus.PAUSED.value)

        response = await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})

        assert response.status_code == 409

    async def test_invalid_flow_is_rejected(self, client, make_flow, delivery):
        flow = await make_flow({"nodes": [{"id": "e", "type": "end"}], "edges": []})

        response = await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})

        assert response.status_code == 422
        body = response.json()
        assert "start node" in body["detail"]
        assert body["warnings"] == []
        assert delivery.calls == []

    async def test_empty_subject_id(self, client, make_flow, linear_definition):
        flow = await make_flow(linear_definition)

        response = await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": ""})

        assert response.status_code == 422


@pytest.mark.integration
class TestRunEndpoints:
    async def _suspended_run(self, client, runtime, make_flow, welcome_definition):
        flow = await make_flow(welcome_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})
        return flow, await runtime.runs.find(flow.id, "sub-1")

    async def test_get_suspended_run(self, client, runtime, make_flow, welcome_definition, clock):
        _, run = await self._suspended_run(client, runtime, make_flow, welcome_definition)

        response = await client.get(f"{V1}/runs/{run.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == RunStatus.ACTIVE.value
        assert body["current_node_id"] == "wait"
        assert body["resume_at"].startswith((clock.now + timedelta(days=2)).isoformat()[:16])

    async def test_run_events(self, client, runtime, make_flow, linear_definition):
        flow = await make_flow(linear_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})
        run = await runtime.runs.find(flow.id, "sub-1")

        response = await client.get(f"{V1}/runs/{run.id}/events")

        assert response.status_code == 200
        types = sorted(e["type"] for e in response.json())
        assert types == ["action_dispatched", "action_dispatched", "completed", "started"]

    async def test_cancel(self, client, runtime, make_flow, welcome_definition):
        _, run = await self._suspended_run(client, runtime, make_flow, welcome_definition)

        response = await client.post(f"{V1}/runs/{run.id}/cancel")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == RunStatus.CANCELLED.value
        assert body["resume_at"] is None

    async def test_cancel_twice_conflicts(self, client, runtime, make_flow, welcome_definition):
        _, run = await self._suspended_run(client, runtime, make_flow, welcome_definition)
        await client.post(f"{V1}/runs/{run.id}/cancel")

        response = await client.post(f"{V1}/runs/{run.id}/cancel")

        assert response.status_code == 409

    async def test_unknown_run(self, client):
        assert (await client.get(f"{V1}/runs/missing")).status_code == 404


@pytest.mark.integration
class TestTrackEndpoint:
    async def test_track_open(self, client, runtime):
        response = await client.post(
            f"{V1}/events/track",
            json={"subject_id": "sub-1", "flow_id": "flow-1", "type": "action_opened", "data": {"node_id": "welcome"}},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["type"] == "action_opened"
        assert body["data"] == {"node_id": "welcome"}
        assert len(await runtime.events.for_flow("flow-1")) == 1

    async def test_engine_event_types_are_rejected(self, client):
        response = await client.post(
            f"{V1}/events/track",
            json={"subject_id": "sub-1", "flow_id": "flow-1", "type": "completed"},
        )

        assert response.status_code == 422
        assert "Invalid event type" in response.json()["detail"]

    async def test_tracked_open_changes_branch(self, client, runtime, scheduler, make_flow, welcome_definition, clock, delivery):
        flow = await make_flow(welcome_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})
        clock.advance(hours=1)
        await client.post(
            f"{V1}/events/track",
            json={
                "subject_id": "sub-1",
                "flow_id": flow.id,
                "type": "action_opened",
                "timestamp": clock.now.isoformat(),
            },
        )

        clock.advance(days=2)
        await scheduler.tick()

        run = await runtime.runs.find(flow.id, "sub-1")
        assert run.status == RunStatus.COMPLETED.value
        assert [c["template"]["template"] for c in delivery.calls] == ["welcome"]


@pytest.mark.integration
class TestSchedulerEndpoints:
    async def test_status(self, client):
        response = await client.get(f"{V1}/scheduler/status")

        assert response.status_code == 200
        body = response.json()
        assert body["running"] is False
        assert body["pending_tasks"] == 0

    async def test_tick_promotes_due_flow(self, client, runtime, make_flow, linear_definition, clock):
        flow = await make_flow(
            linear_definition,
            status=FlowStatus.SCHEDULED.value,
            scheduled_at=clock.now - timedelta(minutes=5),
            audience=[{"subject_id": "sub-1", "context": {}}],
        )

        response = await client.post(f"{V1}/scheduler/tick")

        assert response.status_code == 200
        assert response.json()["promoted"] == 1
        assert (await runtime.runs.find(flow.id, "sub-1")).status == RunStatus.COMPLETED.value


@pytest.mark.integration
class TestAnalyticsAndSimulation:
    async def test_flow_analytics(self, client, make_flow, linear_definition):
        flow = await make_flow(linear_definition)
        await client.post(f"{V1}/flows/{flow.id}/runs", json={"subject_id": "sub-1"})
        await client.post(
            f"{V1}/events/track",
            json={"subject_id": "sub-1", "flow_id": flow.id, "type": "action_opened", "data": {"node_id": "welcome"}},
        )

        response = await client.get(f"{V1}/analytics/{flow.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["runs"]["completed"] == 1
        assert body["runs"]["total"] == 1
        assert body["overview"]["sent"] == 2
        assert body["overview"]["opened"] == 1
        assert body["overview"]["open_rate"] == 50.0
        welcome = next(n for n in body["nodes"] if n["node_id"] == "welcome")
        assert welcome["sent"] == 1
        assert welcome["open_rate"] == 100.0

    async def test_analytics_unknown_flow(self, client):
        assert (await client.get(f"{V1}/analytics/missing")).status_code == 404

    async def test_simulate(self, client, make_flow, welcome_definition, delivery):
        flow = await make_flow(welcome_definition)

        response = await client.post(
            f"{V1}/flows/{flow.id}/simulate",
            json={"behavior": {"email_opened": True}, "start_at": "2025-01-06T09:00:00Z"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["flow_id"] == flow.id
        assert body["outcome"] == "completed"
        assert [s["node_id"] for s in body["steps"]] == ["start", "welcome", "wait", "opened", "end"]
        assert body["steps"][0]["at"] == "2025-01-06T09:00:00"
        assert delivery.calls == []
