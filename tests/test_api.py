import os
import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from stego_api.config import Settings
from stego_api.main import create_app


def _files(settings: Settings):
    return sorted(settings.staging_dir.iterdir()), sorted(settings.output_dir.iterdir())


def _encode(client: TestClient, carrier: bytes, payload: bytes):
    return client.post(
        "/api/encode",
        files={
            "coverImage": ("cover.png", carrier, "image/png"),
            "secretFile": ("secret.txt", payload, "text/plain"),
        },
    )


def test_healthz(client: TestClient) -> None:
    assert client.get("/healthz").json() == {"ok": True}


def test_startup_creates_directories(client: TestClient, settings: Settings) -> None:
    assert settings.staging_dir.is_dir()
    assert settings.output_dir.is_dir()


def test_encode_decode_download_round_trip(client: TestClient, settings: Settings, png_bytes: bytes) -> None:
    res = _encode(client, png_bytes, b"hello")
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "File encoded successfully"
    assert body["filename"].startswith("stego-") and body["filename"].endswith(".png")
    assert body["outputFile"] == f"/api/download/{body['filename']}"

    stego = client.get(body["outputFile"])
    assert stego.status_code == 200
    assert "attachment" in stego.headers["content-disposition"]

    res = client.post("/api/decode", files={"stegoImage": (body["filename"], stego.content, "image/png")})
    assert res.status_code == 200
    decoded = res.json()
    assert decoded["message"] == "File decoded successfully"
    assert decoded["filename"].startswith("extracted-") and decoded["filename"].endswith(".bin")

    assert client.get(decoded["outputFile"]).content == b"hello"
    # downloads do not consume the artifact
    assert client.get(decoded["outputFile"]).content == b"hello"

    staged, outputs = _files(settings)
    assert staged == []
    assert len(outputs) == 2


def test_job_lookup(client: TestClient, png_bytes: bytes) -> None:
    body = _encode(client, png_bytes, b"hello").json()
    job = client.get(f"/api/jobs/{body['jobId']}").json()
    assert job["status"] == "succeeded"
    assert job["operation"] == "encode"
    assert job["diagnostics"]["exit_code"] == 0

    res = client.get("/api/jobs/unknown")
    assert res.status_code == 404
    assert res.json() == {"error": "Job not found"}


def test_decode_without_file(client: TestClient, settings: Settings) -> None:
    res = client.post("/api/decode")
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Stego image is required"}
    assert _files(settings) == ([], [])


@pytest.mark.parametrize("field", ["coverImage", "secretFile"])
def test_encode_with_one_file(client: TestClient, settings: Settings, field: str) -> None:
    res = client.post("/api/encode", files={field: ("only.png", b"data", "image/png")})
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Both cover image and secret file are required"}
    assert _files(settings) == ([], [])


def test_text_field_instead_of_file(client: TestClient) -> None:
    res = client.post("/api/decode", data={"stegoImage": "not a file"})
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_engine_failure(client: TestClient, settings: Settings, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_ENGINE_MODE", "fail")
    res = _encode(client, b"carrier", b"hello")
    assert res.status_code == 500
    body = res.json()
    assert body["success"] is False
    assert body["error"].startswith("Encoding failed: cannot parse carrier ")
    assert str(settings.staging_dir) not in body["error"]
    assert _files(settings) == ([], [])


def test_decode_without_hidden_data(client: TestClient, settings: Settings, png_bytes: bytes) -> None:
    res = client.post("/api/decode", files={"stegoImage": ("plain.png", png_bytes, "image/png")})
    assert res.status_code == 500
    assert res.json() == {"success": False, "error": "Decoding failed: no hidden data found"}
    assert _files(settings) == ([], [])


def test_missing_engine(settings: Settings, tmp_path: Path) -> None:
    settings.engine_path = str(tmp_path / "missing-engine")
    settings.engine_args = []
    with TestClient(create_app(settings)) as client:
        res = _encode(client, b"carrier", b"hello")
    assert res.status_code == 500
    assert res.json()["error"].startswith("Encoding failed: engine could not be started")
    assert _files(settings) == ([], [])


def test_upload_over_limit_is_rejected_before_staging(settings: Settings) -> None:
    settings.max_upload_bytes = 10
    with TestClient(create_app(settings)) as client:
        res = _encode(client, b"0123456789", b"hello")
    assert res.status_code == 413
    assert res.json()["success"] is False
    assert _files(settings) == ([], [])


def test_oversized_request_is_rejected_by_content_length(settings: Settings) -> None:
    settings.max_upload_bytes = 10
    with TestClient(create_app(settings)) as client:
        res = _encode(client, b"x" * 200_000, b"hello")
    assert res.status_code == 413
    assert "limit" in res.json()["error"]
    assert _files(settings) == ([], [])


def test_carrier_verification(settings: Settings, png_bytes: bytes) -> None:
    settings.verify_carrier = True
    with TestClient(create_app(settings)) as client:
        bad = _encode(client, b"not an image", b"hello")
        good = _encode(client, png_bytes, b"hello")
    assert bad.status_code == 400
    assert bad.json()["error"] == "Cover image is not a readable image"
    assert good.status_code == 200


def test_download_missing(client: TestClient) -> None:
    res = client.get("/api/download/does-not-exist.bin")
    assert res.status_code == 404
    assert res.json() == {"error": "File not found"}


@pytest.mark.parametrize(
    "path",
    [
        "/api/download/..%2F..%2Fetc%2Fpasswd",
        "/api/download/%2Fetc%2Fpasswd",
        "/api/download/..%5C..%5Cetc%5Cpasswd",
        "/api/download/sub/file.bin",
        "/api/download/" + "a" * 300 + ".bin",
    ],
)
def test_download_traversal(client: TestClient, path: str) -> None:
    res = client.get(path)
    assert res.status_code == 404
    assert res.json() == {"error": "File not found"}


def test_output_ttl_purges_on_startup(settings: Settings) -> None:
    settings.output_dir.mkdir(parents=True)
    stale = settings.output_dir / "stego-1.png"
    stale.write_bytes(b"old")
    week_ago = time.time() - 7 * 24 * 3600
    os.utime(stale, (week_ago, week_ago))

    settings.output_ttl_hours = 24
    with TestClient(create_app(settings)):
        pass
    assert not stale.exists()


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("STEGO_PORT", "8080")
    monkeypatch.setenv("STEGO_ENGINE_PATH", sys.executable)
    monkeypatch.setenv("STEGO_ENGINE_ARGS", "engine.py --quiet")
    monkeypatch.setenv("STEGO_OUTPUT_DIR", str(tmp_path / "out"))
    monkeypatch.setenv("STEGO_MAX_UPLOAD_MB", "5")
    monkeypatch.setenv("STEGO_JOB_TIMEOUT_SEC", "not-a-number")
    monkeypatch.setenv("STEGO_VERIFY_CARRIER", "yes")

    s = Settings.from_env()
    assert s.port == 8080
    assert s.engine_args == ["engine.py", "--quiet"]
    assert s.output_dir == tmp_path / "out"
    assert s.max_upload_bytes == 5 * 1024 * 1024
    assert s.job_timeout_sec == 120.0
    assert s.verify_carrier is True


def test_chunked_upload_over_limit_is_cut_off(settings: Settings) -> None:
    settings.max_upload_bytes = 10
    boundary = "stegoboundary"

    def body():
        yield (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="stegoImage"; filename="big.png"\r\n'
            "Content-Type: image/png\r\n\r\n"
        ).encode()
        for _ in range(10):
            yield b"x" * 20_000
        yield f"\r\n--{boundary}--\r\n".encode()

    with TestClient(create_app(settings)) as client:
        res = client.post(
            "/api/decode",
            content=body(),
            headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
        )
    assert res.status_code == 413
    assert res.json() == {"success": False, "error": "Upload exceeds the 9.53674e-06MB limit"}
    assert _files(settings) == ([], [])


def test_server_errors_do_not_leak_paths(settings: Settings, monkeypatch) -> None:
    app = create_app(settings)
    store = app.state.store

    def denied(filename):
        raise PermissionError(13, "Permission denied", str(store.output_dir / filename))

    def broken(filename):
        raise RuntimeError(f"cannot read {store.output_dir}/{filename}")

    with TestClient(app, raise_server_exceptions=False) as client:
        monkeypatch.setattr(store, "resolve_output", denied)
        res = client.get("/api/download/stego-1.png")
        assert res.status_code == 500
        assert res.json() == {"success": False, "error": "Server error: Permission denied"}

        monkeypatch.setattr(store, "resolve_output", broken)
        res = client.get("/api/download/stego-1.png")
        assert res.json() == {"success": False, "error": "Server error: cannot read stego-1.png"}
