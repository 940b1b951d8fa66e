import asyncio

from fastapi.testclient import TestClient

from orchestrator.errors import GatewayNetworkError, UnparsableModelOutputError
from orchestrator.main import PlanStreamingResponse, create_app, plan
from orchestrator.pipeline import PlanPipeline, PlanState
from orchestrator.schemas import PlanRequest

from fakes import FakeGateway, FakeGeneration, make_config, status_error


KYOTO_BODY = {"city": "Kyoto", "date": "2025-12-12", "preferences": ["temples", "walkable"]}


def client_for(gateway=None, generation=None):
    app = create_app(make_config(), gateway=gateway or FakeGateway(), generation=generation or FakeGeneration())
    return TestClient(app)


def test_root_liveness():
    with client_for() as client:
        resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_plan_streams_trace_tokens_and_terminator():
    with client_for() as client:
        resp = client.post("/api/v1/plan", json=KYOTO_BODY)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    body = resp.text
    assert body.startswith("data: [TRACE] Intent: plan_day\n\n")
    assert "data: [TRACE] Geocoded: Kyoto, Japan\n\n" in body
    assert "data: # Kyoto\n\n" in body
    assert body.endswith("data: [END]\n\n")
    assert body.count("[END]") == 1


def test_missing_city_is_400():
    with client_for() as client:
        resp = client.post("/api/v1/plan", json={"date": "2025-12-12"})
    assert resp.status_code == 400
    payload = resp.json()
    assert payload["error"] == "Invalid request"
    assert "city" in payload["details"]


def test_bad_date_is_400():
    with client_for() as client:
        resp = client.post("/api/v1/plan", json={"city": "Kyoto", "date": "tomorrow"})
    assert resp.status_code == 400


def test_geocode_failure_returns_json_error_without_frames():
    gateway = FakeGateway(failures={"geocode": GatewayNetworkError("geocode", "timed out")})
    with client_for(gateway=gateway) as client:
        resp = client.post("/api/v1/plan", json=KYOTO_BODY)

    assert resp.status_code == 502
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.json() == {"error": "Failed to geocode city", "details": "geocode: timed out"}
    assert "data:" not in resp.text


def test_draft_failure_returns_raw_output():
    generation = FakeGeneration(draft_error=UnparsableModelOutputError("Sure! Here is", "Expecting value"))
    with client_for(generation=generation) as client:
        resp = client.post("/api/v1/plan", json=KYOTO_BODY)

    assert resp.status_code == 502
    payload = resp.json()
    assert payload["error"] == "Failed Pass 1 (Draft Generation)"
    assert "Sure! Here is" in payload["details"]


def test_degraded_sources_keep_success_status():
    gateway = FakeGateway(failures={"aqi": status_error("aqi"), "eta": status_error("eta")})
    with client_for(gateway=gateway) as client:
        resp = client.post("/api/v1/plan", json=KYOTO_BODY)

    assert resp.status_code == 200
    assert "data: [TRACE] Route Status: Travel times are unavailable due to an API error.\n\n" in resp.text
    assert resp.text.endswith("data: [END]\n\n")


def disconnect_while_sending(block_at: int):
    """Serve one plan over ASGI; the client stalls on message ``block_at`` then disconnects."""
    generation = FakeGeneration(tokens=[f"t{i}" for i in range(20)])
    pipeline = PlanPipeline(FakeGateway(), generation)

    async def go():
        response = await plan(PlanRequest(**KYOTO_BODY), pipeline=pipeline)
        stalled = asyncio.Event()
        sent = []

        async def send(message):
            if len(sent) == block_at:
                stalled.set()
                await asyncio.Event().wait()
            sent.append(message)

        async def receive():
            await stalled.wait()
            return {"type": "http.disconnect"}

        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "method": "POST",
            "path": "/api/v1/plan",
            "headers": [],
        }
        await asyncio.wait_for(response(scope, receive, send), timeout=5)
        return response, sent

    response, sent = asyncio.run(go())
    return response, sent, generation.upstream


def test_disconnect_before_response_start_releases_upstream():
    response, sent, upstream = disconnect_while_sending(0)

    assert isinstance(response, PlanStreamingResponse)
    assert sent == []
    assert response.plan_stream.state is PlanState.ROUTED
    assert response.plan_stream.tokens.closed
    assert upstream.closed


def test_disconnect_mid_stream_releases_upstream():
    # start + four trace frames + t0 go out, the client stalls on t1
    response, sent, upstream = disconnect_while_sending(6)

    assert sent[0]["type"] == "http.response.start"
    assert sent[-1]["body"] == b"data: t0\n\n"
    assert response.plan_stream.state is PlanState.STREAMING
    assert upstream.closed
    assert upstream.consumed < 20
