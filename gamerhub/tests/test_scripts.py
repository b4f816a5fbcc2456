import json

import gamerhub.scripts.upload_media as upload_script
from gamerhub.features.uploads.client import UploadProgress, UploadTransportError
from gamerhub.features.usage.service import get_or_create_user, record_boost
from gamerhub.scripts.show_subscription_status import main as status_main


class FakeUploader:
    calls = []

    def __init__(self, endpoint, **kwargs):
        self.endpoint = endpoint
        self.kwargs = kwargs

    async def upload(self, source, on_progress=None):
        FakeUploader.calls.append((self.endpoint, self.kwargs["headers"], source.name, source.size))
        on_progress(UploadProgress(progress=0.0, status="uploading"))
        on_progress(UploadProgress(progress=100.0, status="complete", url="https://media.test/u/clip.mp4"))
        return "https://media.test/u/clip.mp4"


class FailingUploader(FakeUploader):
    async def upload(self, source, on_progress=None):
        raise UploadTransportError("Storage limit exceeded.", status_code=403)


def test_upload_script_prints_url(tmp_path, monkeypatch, capsys):
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"frames")
    FakeUploader.calls = []
    monkeypatch.setattr(upload_script, "ChunkedUploader", FakeUploader)

    code = upload_script.main([str(clip), "--user-id", "user_alice", "--endpoint", "http://api.test/api/upload"])

    assert code == 0
    assert FakeUploader.calls == [("http://api.test/api/upload", {"X-User-Id": "user_alice"}, "clip.mp4", 6)]
    assert "https://media.test/u/clip.mp4" in capsys.readouterr().out


def test_upload_script_reports_failure(tmp_path, monkeypatch, capsys):
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"frames")
    monkeypatch.setattr(upload_script, "ChunkedUploader", FailingUploader)

    assert upload_script.main([str(clip), "--user-id", "user_alice"]) == 1
    assert "Storage limit exceeded." in capsys.readouterr().err


def test_upload_script_missing_file(tmp_path, capsys):
    assert upload_script.main([str(tmp_path / "nope.mp4"), "--user-id", "user_alice"]) == 1


def test_show_subscription_status_json(capsys):
    get_or_create_user("user_alice")
    record_boost("user_alice")

    assert status_main(["--user-id", "user_alice", "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["tier"] == "free"
    assert report["usage"]["boosts_this_month"] == 1
    assert report["checks"]["boost"] == {"allowed": True, "remaining": 4}


def test_show_subscription_status_text(capsys):
    assert status_main(["--user-id", "user_bob"]) == 0
    out = capsys.readouterr().out
    assert "Tier:   free [inactive]" in out
    assert "Posts today:" in out
