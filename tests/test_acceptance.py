import os
import re

import httpx
import pytest

from client_cli.main import END_MARKER, TRACE_PREFIX, iter_events


ORCHESTRATOR_URL = os.getenv("ORCHESTRATOR_URL", "").rstrip("/")
PLAN_ENDPOINT = f"{ORCHESTRATOR_URL}/api/v1/plan"
DEFAULT_TIMEOUT = float(os.getenv("TEST_HTTP_TIMEOUT", "120"))

pytestmark = pytest.mark.skipif(not ORCHESTRATOR_URL, reason="ORCHESTRATOR_URL not set; live acceptance tests skipped")


def _collect(body: dict) -> tuple[list[str], str, bool]:
    """
    Call the orchestrator plan endpoint and split the stream into trace lines and narrated text.
    """
    traces: list[str] = []
    out: list[str] = []
    ended = False
    with httpx.Client(timeout=DEFAULT_TIMEOUT) as client:
        with client.stream(
            "POST",
            PLAN_ENDPOINT,
            json=body,
            headers={"Accept": "text/event-stream", "Content-Type": "application/json"},
        ) as resp:
            resp.raise_for_status()
            for payload in iter_events(resp.iter_lines()):
                if payload == END_MARKER:
                    ended = True
                    break
                if payload.startswith(TRACE_PREFIX):
                    traces.append(payload)
                else:
                    out.append(payload)
    return traces, "".join(out), ended


def test_basic_plan():
    traces, txt, ended = _collect({"city": "Kyoto", "date": "2025-12-12", "preferences": ["temples", "walkable"]})
    assert ended
    assert any(t.startswith("[TRACE] Geocoded:") and "Kyoto" in t for t in traces)
    assert any(t.startswith("[TRACE] Route Status:") for t in traces)
    assert re.search(r"weather|°C|rain", txt, flags=re.IGNORECASE)


def test_holiday_awareness():
    _, txt, ended = _collect({"city": "New York", "date": "2025-07-04", "preferences": ["museums"], "country_code": "US"})
    assert ended
    assert re.search(r"holiday", txt, flags=re.IGNORECASE)


def test_unknown_city_is_json_error():
    with httpx.Client(timeout=DEFAULT_TIMEOUT) as client:
        resp = client.post(PLAN_ENDPOINT, json={"city": "Xqzzyplk Nowhere", "date": "2025-12-12"})
    assert resp.status_code >= 400
    assert "error" in resp.json()
