"""Tests for the FilterX HTTP API."""

from __future__ import annotations

import asyncio
import io
import threading
import zipfile
from collections import Counter
from collections.abc import AsyncIterator
from unittest.mock import patch

import httpx
import pytest
from fastapi import FastAPI, status

from filterx.config import Settings
from filterx.exceptions import ArchiveError
from filterx.main import create_app, init_state

from conftest import BrokenModel, FakeModel, FakeProvider, GatedModel, encode_image

LABELS = ("normal", "tampered")


def _make_app(provider: FakeProvider, **overrides: object) -> FastAPI:
    """Create an app with state initialized manually (ASGITransport does not trigger lifespan)."""
    app = create_app()
    init_state(app, Settings(**overrides), provider=provider)  # type: ignore[arg-type]
    return app


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.state.inference_pool.shutdown()


def _png(name: str) -> tuple[str, tuple[str, bytes, str]]:
    return ("files", (name, encode_image(), "image/png"))


async def _wait_until_running(client: httpx.AsyncClient) -> dict[str, object]:
    for _ in range(500):
        response = await client.get("/api/v1/batches/current")
        if response.status_code == status.HTTP_200_OK and response.json()["status"] == "running":
            return response.json()
        await asyncio.sleep(0.01)
    pytest.fail("batch never reached the running state")


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider(FakeModel([[1.0, 0.0], [0.0, 1.0], [0.8, 0.2]]), labels=LABELS)


@pytest.fixture()
def app(provider: FakeProvider) -> FastAPI:
    return _make_app(provider, tampered_folder="tampered")


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async for ac in _make_client(app):
        yield ac


class TestCreateBatch:
    async def test_end_to_end_batch(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/batches", files=[_png("a.png"), _png("b.png"), _png("c.png")])

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "completed"
        assert data["total"] == 3
        assert data["counts"] == {"normal": 1, "tampered": 1, "unidentified": 1}
        assert [item["filename"] for item in data["items"]] == ["a.png", "b.png", "c.png"]
        assert [item["category"] for item in data["items"]] == ["normal", "tampered", "unidentified"]
        assert data["items"][2]["confidence"] == pytest.approx(0.8)
        assert data["archive_filename"].startswith("filtered_")
        assert data["archive_filename"].endswith(".zip")
        assert data["archive_url"].endswith(f"/api/v1/batches/{data['batch_id']}/archive")

        archive = await client.get(f"/api/v1/batches/{data['batch_id']}/archive")
        assert archive.status_code == status.HTTP_200_OK
        assert archive.headers["content-type"] == "application/zip"
        assert data["archive_filename"] in archive.headers["content-disposition"]
        with zipfile.ZipFile(io.BytesIO(archive.content)) as zf:
            names = zf.namelist()
        assert Counter(name.split("/")[1] for name in names) == {"normal": 1, "tampered": 1, "unidentified": 1}

    async def test_non_images_dropped(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/batches",
            files=[_png("a.png"), ("files", ("notes.txt", b"hello", "text/plain"))],
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["total"] == 1

    async def test_only_non_images_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/batches", files=[("files", ("notes.txt", b"hello", "text/plain"))])
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_model_not_loaded_returns_503(self) -> None:
        app = _make_app(FakeProvider(None, error="model.onnx not found"))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/batches", files=[_png("a.png")])
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert "model.onnx not found" in response.json()["detail"]

    async def test_undecodable_image_aborts_batch(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/batches",
            files=[_png("a.png"), ("files", ("broken.png", b"garbage", "image/png"))],
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        body = response.json()
        assert "Failed to process batch images" in body["detail"]

        summary = await client.get(f"/api/v1/batches/{body['batch_id']}")
        assert summary.json()["status"] == "failed"
        assert summary.json()["archive_url"] is None

        archive = await client.get(f"/api/v1/batches/{body['batch_id']}/archive")
        assert archive.status_code == status.HTTP_409_CONFLICT

    async def test_skip_policy_reports_failures(self, provider: FakeProvider) -> None:
        app = _make_app(provider, failure_policy="skip")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/batches",
                files=[_png("a.png"), ("files", ("broken.png", b"garbage", "image/png"))],
            )
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["completed"] == 2
            assert [failure["filename"] for failure in data["failures"]] == ["broken.png"]
            assert len(data["items"]) == 1

    async def test_file_too_large_rejected(self, provider: FakeProvider) -> None:
        app = _make_app(provider, max_file_size=10)
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/batches", files=[_png("a.png")])
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_model_rejecting_input_returns_422(self) -> None:
        app = _make_app(FakeProvider(BrokenModel(), labels=LABELS))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/batches", files=[_png("a.png")])
            assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
            body = response.json()
            assert "rejected input" in body["detail"]

            summary = (await ac.get(f"/api/v1/batches/{body['batch_id']}")).json()
            assert summary["status"] == "failed"

    async def test_cancel_running_batch(self) -> None:
        gate = threading.Event()
        app = _make_app(FakeProvider(GatedModel([[1.0, 0.0]], gate), labels=LABELS))
        async for ac in _make_client(app):
            upload = asyncio.create_task(
                ac.post("/api/v1/batches", files=[_png("a.png"), _png("b.png"), _png("c.png")])
            )
            try:
                progress = await _wait_until_running(ac)
                assert progress["completed"] == 0
                assert progress["total"] == 3

                busy = await ac.post("/api/v1/batches", files=[_png("d.png")])
                assert busy.status_code == status.HTTP_409_CONFLICT

                cancel = await ac.post("/api/v1/batches/current/cancel")
                assert cancel.status_code == status.HTTP_200_OK
                assert cancel.json()["batch_id"] == progress["batch_id"]
            finally:
                gate.set()

            response = await upload
            assert response.status_code == status.HTTP_409_CONFLICT
            body = response.json()
            assert body["batch_id"] == progress["batch_id"]
            assert "cancelled after 1 of 3" in body["detail"]

            summary = (await ac.get(f"/api/v1/batches/{body['batch_id']}")).json()
            assert summary["status"] == "cancelled"
            assert len(summary["items"]) == 1
            assert (await ac.get("/api/v1/batches/current")).status_code == status.HTTP_404_NOT_FOUND

    async def test_archive_failure_can_be_retried(self, client: httpx.AsyncClient) -> None:
        with patch("filterx.history.build_archive", side_effect=ArchiveError("disk full")):
            response = await client.post("/api/v1/batches", files=[_png("a.png")])
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        batch_id = response.json()["batch_id"]

        summary = (await client.get(f"/api/v1/batches/{batch_id}")).json()
        assert summary["status"] == "completed"
        assert summary["archive_error"] == "disk full"

        archive = await client.get(f"/api/v1/batches/{batch_id}/archive")
        assert archive.status_code == status.HTTP_200_OK
        with zipfile.ZipFile(io.BytesIO(archive.content)) as zf:
            assert len(zf.namelist()) == 1


class TestBatchQueries:
    async def test_unknown_batch_returns_404(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/v1/batches/nope")).status_code == status.HTTP_404_NOT_FOUND
        assert (await client.get("/api/v1/batches/nope/archive")).status_code == status.HTTP_404_NOT_FOUND

    async def test_no_current_batch(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/v1/batches/current")).status_code == status.HTTP_404_NOT_FOUND
        assert (await client.post("/api/v1/batches/current/cancel")).status_code == status.HTTP_404_NOT_FOUND

    async def test_stats_accumulate_across_batches(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/v1/batches", files=[_png("a.png"), _png("b.png")])
        await client.post("/api/v1/batches", files=[_png("c.png")])

        response = await client.get("/api/v1/stats")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["batches"] == 2
        assert data["images"] == 3
        # The fake model cycles through normal, tampered, unidentified.
        assert data["counts"] == {"normal": 1, "tampered": 1, "unidentified": 1}

    async def test_stats_ignore_failed_batches(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/v1/batches", files=[_png("a.png")])
        await client.post(
            "/api/v1/batches",
            files=[_png("b.png"), ("files", ("broken.png", b"garbage", "image/png"))],
        )

        data = (await client.get("/api/v1/stats")).json()
        assert data["batches"] == 1
        assert data["images"] == 1
        assert data["counts"] == {"normal": 1, "tampered": 0, "unidentified": 0}


class TestModelEndpoints:
    async def test_health_reports_model(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["model_loaded"] is True
        assert data["batch_running"] is False

    async def test_models_lists_labels(self, client: httpx.AsyncClient) -> None:
        data = (await client.get("/api/v1/models")).json()
        assert data["status"] == "loaded"
        assert data["labels"] == ["normal", "tampered"]
        assert data["input_size"] == 224

    async def test_reload_retry_after_failure(self) -> None:
        provider = FakeProvider(None, error="model.onnx not found")
        app = _make_app(provider)
        async for ac in _make_client(app):
            health = (await ac.get("/api/v1/health")).json()
            assert health["status"] == "degraded"

            failed = await ac.post("/api/v1/models/reload")
            assert failed.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

            provider.next_model = FakeModel([[1.0, 0.0]])
            reloaded = await ac.post("/api/v1/models/reload")
            assert reloaded.status_code == status.HTTP_200_OK
            assert reloaded.json()["status"] == "loaded"
            assert provider.load_calls == 2

            batch = await ac.post("/api/v1/batches", files=[_png("a.png")])
            assert batch.status_code == status.HTTP_200_OK


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, provider: FakeProvider) -> None:
        app = _make_app(provider, api_key="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, provider: FakeProvider) -> None:
        app = _make_app(provider, api_key="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, provider: FakeProvider) -> None:
        app = _make_app(provider, api_key="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
