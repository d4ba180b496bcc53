"""Tests for size-limited body parsing."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from secure_hello.core.body_limit import MAX_BODY_BYTES


def _add_echo_route(app: FastAPI) -> list[object]:
    seen: list[object] = []

    @app.post("/echo")
    async def echo(request: Request) -> dict:
        seen.append(request.state.parsed_body)
        return {"parsed": request.state.parsed_body, "raw_length": len(await request.body())}

    return seen


def test_small_json_body_is_parsed(app: FastAPI) -> None:
    seen = _add_echo_route(app)
    client = TestClient(app)

    body = b'{"name": "ada"}'
    response = client.post("/echo", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json()["parsed"] == {"name": "ada"}
    assert response.json()["raw_length"] == len(body)
    assert seen == [{"name": "ada"}]


def test_oversized_json_is_rejected_before_route(app: FastAPI) -> None:
    seen = _add_echo_route(app)
    client = TestClient(app, raise_server_exceptions=False)

    payload = {"blob": "x" * (MAX_BODY_BYTES + 1)}
    response = client.post("/echo", json=payload)

    assert response.status_code == 413
    body = response.json()
    assert body["status"] == 413
    assert body["error"] == "Error"
    assert body["message"] == "request entity too large"
    assert seen == []


def test_oversized_form_is_rejected_before_route(app: FastAPI) -> None:
    seen = _add_echo_route(app)
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post(
        "/echo",
        content="field=" + "y" * MAX_BODY_BYTES,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 413
    assert seen == []


def test_form_body_is_parsed(app: FastAPI) -> None:
    _add_echo_route(app)
    client = TestClient(app)

    response = client.post(
        "/echo",
        content="a=1&b=2&b=3",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.json()["parsed"] == {"a": "1", "b": ["2", "3"]}


def test_malformed_json_is_rejected(app: FastAPI) -> None:
    seen = _add_echo_route(app)
    client = TestClient(app, raise_server_exceptions=False)

    response = client.post("/echo", content="{not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["message"].startswith("Invalid JSON body")
    assert seen == []


def test_oversized_body_on_unknown_path_is_still_rejected(client: TestClient) -> None:
    response = client.post("/nowhere", json={"blob": "z" * (MAX_BODY_BYTES * 2)})

    assert response.status_code == 413


def test_other_content_types_pass_through(client: TestClient) -> None:
    response = client.post(
        "/nowhere",
        content=b"x" * (MAX_BODY_BYTES * 2),
        headers={"Content-Type": "application/octet-stream"},
    )

    assert response.status_code == 404
