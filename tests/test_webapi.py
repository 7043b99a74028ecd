"""API-level tests for the upload, batch, catalog and clear endpoints."""

from pathlib import Path

from heic_service import webapi


def _upload(client, name="photo.heic", data=b"\x01" * 1000, fmt=None):
    form = {"format": fmt} if fmt is not None else {}
    return client.post("/upload", files={"heicFile": (name, data, "image/heic")}, data=form)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_upload_converts_and_lists(client):
    resp = _upload(client, fmt="png")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"
    assert body["originalFile"] == "photo.heic"
    assert body["convertedFile"] == "photo.png"
    assert body["downloadUrl"] == "/converted/photo.png"

    files = client.get("/converted-files").json()["files"]
    assert {"name": "photo.png", "downloadUrl": "/converted/photo.png"} in files


def test_upload_default_format_is_jpeg(client):
    for fmt in (None, ""):
        body = _upload(client, fmt=fmt).json()
        assert body["convertedFile"] == "photo.jpg"


def test_download_converted_file(client):
    _upload(client, data=b"abc", fmt="png")
    resp = client.get("/converted/photo.png")
    assert resp.status_code == 200
    assert resp.content == b"png:abc"
    assert client.get("/converted/missing.png").status_code == 404


def test_upload_without_file(client):
    resp = client.post("/upload", data={"format": "png"})
    assert resp.status_code == 400
    assert resp.json()["status"] == "error"
    assert resp.json()["message"] == "No file uploaded"


def test_upload_wrong_extension_leaves_no_trace(client, storage, service, converter):
    resp = _upload(client, name="photo.jpg")

    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"
    assert list(storage.list_inbox()) == []
    assert service.jobs() == []
    assert converter.calls == []


def test_upload_unsupported_format(client, storage):
    resp = _upload(client, fmt="gif")
    assert resp.status_code == 400
    assert list(storage.list_inbox()) == []


def test_upload_too_large(client, storage, monkeypatch):
    monkeypatch.setattr(webapi, "MAX_UPLOAD_MB", 0)
    resp = _upload(client, data=b"x" * 10)
    assert resp.status_code == 413
    assert list(storage.list_inbox()) == []


def test_upload_conversion_failure(client, converter, storage):
    converter.fail_on["photo.heic"] = "not a HEIF file"
    resp = _upload(client)

    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "code": "conversion_error", "message": "not a HEIF file"}
    assert list(storage.list_inbox()) == ["photo.heic"]
    assert list(storage.list_outbox()) == []


def test_reupload_overwrites_inbox_entry(client, storage):
    _upload(client, data=b"x" * 1000)
    _upload(client, data=b"y" * 10)

    assert list(storage.list_inbox()) == ["photo.heic"]
    assert (storage.inbox / "photo.heic").read_bytes() == b"y" * 10


def test_convert_all_with_one_failure(client, storage, converter):
    storage.persist_source("a.heic", b"x")
    storage.persist_source("b.heic", b"x")
    converter.fail_on["b.heic"] = "unsupported brand"

    resp = client.get("/convert-all", params={"format": "png"})

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "success",
        "format": "png",
        "result": {"succeeded": 1, "failed": [{"source": "b.heic", "reason": "unsupported brand"}]},
    }
    assert list(storage.list_outbox()) == ["a.png"]


def test_convert_all_format_collapses_to_jpeg(client, storage):
    storage.persist_source("a.heic", b"x")
    for params in ({}, {"format": "webp"}, {"format": "PNG"}):
        body = client.get("/convert-all", params=params).json()
        assert body["format"] == "jpeg"
    assert list(storage.list_outbox()) == ["a.jpg"]


def test_convert_all_empty(client):
    body = client.get("/convert-all").json()
    assert body["result"] == {"succeeded": 0, "failed": []}


def test_clear(client, storage):
    _upload(client, fmt="png")
    resp = client.delete("/clear")

    assert resp.status_code == 200
    assert resp.json()["status"] == "success"
    assert client.get("/converted-files").json() == {"files": []}
    assert list(storage.list_inbox()) == []
    assert client.delete("/clear").json()["removed"] == 0


def test_single_removals_are_idempotent(client, storage):
    _upload(client, fmt="png")
    assert client.delete("/converted/photo.png").json() == {"status": "success"}
    assert client.delete("/converted/photo.png").status_code == 200
    assert client.delete("/uploads/photo.heic").status_code == 200
    assert list(storage.list_inbox()) == []
    assert list(storage.list_outbox()) == []


def test_convert_existing_upload(client, storage):
    storage.persist_source("a.heic", b"x")
    body = client.post("/convert/a.heic", params={"format": "png"}).json()
    assert body["convertedFile"] == "a.png"
    assert client.post("/convert/ghost.heic").status_code == 404


def test_jobs_and_retry(client, converter):
    converter.fail_on["photo.heic"] = "flaky"
    _upload(client, fmt="png")
    [job] = client.get("/jobs").json()["jobs"]
    assert job["status"] == "failed"
    assert job["error"] == "flaky"

    del converter.fail_on["photo.heic"]
    resp = client.post(f"/jobs/{job['id']}/retry")
    assert resp.status_code == 200
    assert resp.json()["convertedFile"] == "photo.png"

    # the successful retry supersedes the failed job
    assert client.get(f"/jobs/{job['id']}").status_code == 404
    jobs = client.get("/jobs").json()["jobs"]
    assert [(j["status"], j["retryOf"]) for j in jobs] == [("converted", job["id"])]


def test_retry_of_converted_job_conflicts(client):
    _upload(client)
    [job] = client.get("/jobs").json()["jobs"]
    assert client.post(f"/jobs/{job['id']}/retry").status_code == 409
    assert client.get("/jobs/job-404").status_code == 404


def test_clear_reports_partial_failure(client, storage, service, monkeypatch):
    _upload(client, fmt="png")
    real_unlink = Path.unlink

    def locked_unlink(self, missing_ok=False):
        if self.name == "photo.png":
            raise PermissionError("file is locked")
        return real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", locked_unlink)

    resp = client.delete("/clear")

    assert resp.status_code == 500
    body = resp.json()
    assert body["status"] == "error"
    assert body["code"] == "partial_failure"
    assert body["failed"] == [{"source": "converted/photo.png", "reason": "file is locked"}]
    assert list(storage.list_inbox()) == []
    assert service.jobs() == []
