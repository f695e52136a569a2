import logging
from pathlib import Path

import pytest

from models.render_errors import EncodingFailureError, PublishFailureError
from operators.render_orchestrator import RenderOrchestrator
from utils.asset_fetcher import MaterializedInput
from utils.render_config import RenderConfig


class FakeFetcher:
    """Materializes references listed in ``available``; everything else is absent."""

    def __init__(self, workspace: Path, job_id: str, available: dict, log: list):
        self.workspace = workspace
        self.job_id = job_id
        self.available = available
        self.log = log

    def fetch_first(self, reference, buckets, kind, role, base_url=None, timeout=None):
        self.log.append((role, reference, list(buckets)))
        if reference not in self.available:
            return None
        has_audio, duration = self.available[reference]
        path = self.workspace / f"{role}_{len(self.log)}.bin"
        path.write_bytes(b"media")
        return MaterializedInput(
            local_path=str(path),
            kind=kind,
            role=role,
            has_audio=has_audio,
            duration_seconds=duration,
            source_url=reference,
        )


class FakeRunner:
    def __init__(self, load_job):
        self.load_job = load_job
        self.calls = []
        self.error = None
        self.status_during_run = None

    def __call__(self, cmd, timeout_seconds, progress_callback=None, **kwargs):
        job_id = Path(cmd[-1]).stem.replace("final_", "")
        self.status_during_run = self.load_job(job_id).status
        self.calls.append({"cmd": cmd, "timeout": timeout_seconds, **kwargs})
        if progress_callback:
            progress_callback(70)
        if self.error:
            raise self.error
        Path(cmd[-1]).write_bytes(b"encoded")


class FakePublisher:
    def __init__(self):
        self.uploads = []
        self.error = None

    def __call__(self, output_path, bucket_name, blob_name):
        if self.error:
            raise self.error
        self.uploads.append((Path(output_path).read_bytes(), bucket_name, blob_name))
        return f"https://storage.example.com/{bucket_name}/{blob_name}"


@pytest.fixture
def available():
    return {
        "scene_1.mp4": (True, 4.0),
        "scene_2.mp4": (False, 3.0),
        "https://cdn/music/calm.mp3": (True, None),
        "logos/brand.mp4": (True, 5.0),
    }


@pytest.fixture
def harness(tmp_path, session_factory, load_job, available):
    fetch_log = []
    workspaces = []
    runner = FakeRunner(load_job)
    publisher = FakePublisher()

    def fetcher_factory(workspace, job_id):
        workspaces.append(Path(workspace))
        return FakeFetcher(Path(workspace), job_id, available, fetch_log)

    config = RenderConfig(
        temp_dir=str(tmp_path / "renders"),
        readiness_interval_seconds=0,
        readiness_max_attempts=2,
        poll_interval_seconds=0.1,
        max_concurrent_jobs=2,
    )
    orchestrator = RenderOrchestrator(
        session_factory=session_factory,
        config=config,
        fetcher_factory=fetcher_factory,
        runner=runner,
        publisher=publisher,
    )

    class Harness:
        pass

    h = Harness()
    h.orchestrator = orchestrator
    h.runner = runner
    h.publisher = publisher
    h.fetch_log = fetch_log
    h.workspaces = workspaces
    yield h
    orchestrator.shutdown()


def _payload(*scenes, **extra):
    payload = {"scenes": [{"video_url": scene} for scene in scenes]}
    payload.update(extra)
    return payload


class TestSuccessfulRender:
    def test_full_render_with_music(self, harness, make_job, load_job, add_music_track):
        add_music_track("Calm", url="https://cdn/music/calm.mp3")
        job_id = make_job(payload=_payload("scene_1.mp4", "scene_2.mp4", music_track="calm"))

        assert harness.orchestrator.run_job(job_id) is True

        job = load_job(job_id)
        assert job.status == "completed"
        assert job.progress == 100
        assert job.result_url == (
            f"https://storage.example.com/generated-content/public/renders/final_{job_id}.mp4"
        )
        assert job.error_message is None
        assert harness.runner.status_during_run == "rendering"

        cmd = harness.runner.calls[0]["cmd"]
        assert cmd.count("-i") == 3
        graph = cmd[cmd.index("-filter_complex") + 1]
        assert "concat=n=2:v=1:a=1" in graph
        assert "anullsrc" in graph
        assert "amix=inputs=2" in graph

        assert harness.publisher.uploads == [
            (b"encoded", "generated-content", f"public/renders/final_{job_id}.mp4")
        ]
        assert not harness.workspaces[0].exists()

    def test_missing_music_degrades(self, harness, make_job, load_job, caplog):
        job_id = make_job(payload=_payload("scene_1.mp4", music_track="not-in-library.mp3"))

        with caplog.at_level(logging.WARNING):
            harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "completed"
        graph = harness.runner.calls[0]["cmd"]
        assert "amix" not in " ".join(graph)
        assert "render_optional_asset_missing" in caplog.text
        assert ("music", "not-in-library.mp3", ["music-tracks", "generated-content"]) in (
            harness.fetch_log
        )

    def test_intro_falls_back_to_latest_logo(self, harness, make_job, add_logo_video):
        add_logo_video("logos/brand.mp4")
        job_id = make_job(payload=_payload("scene_1.mp4"))

        harness.orchestrator.run_job(job_id)

        roles = [entry[0] for entry in harness.fetch_log]
        assert roles == ["intro", "scene"]
        assert harness.fetch_log[0][2] == ["generated-content", "music-tracks", "public"]
        cmd = harness.runner.calls[0]["cmd"]
        assert cmd.count("-i") == 2
        assert "concat=n=2:v=1:a=1" in cmd[cmd.index("-filter_complex") + 1]

    def test_manifest_geometry_overrides_default(self, harness, make_job):
        job_id = make_job(payload=_payload("scene_1.mp4", width=1080, height=1920))

        harness.orchestrator.run_job(job_id)

        graph = harness.runner.calls[0]["cmd"]
        assert any("scale=1080:1920" in arg for arg in graph)

    def test_failure_keeps_reached_progress(self, harness, make_job, load_job):
        job_id = make_job(payload=_payload("scene_1.mp4"))
        harness.publisher.error = PublishFailureError("bucket gone")

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.progress == 90


class TestFailedRender:
    def test_unfetchable_scene_fails_job(self, harness, make_job, load_job):
        job_id = make_job(payload=_payload("scene_1.mp4", "gone.mp4"))

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "asset_unavailable"
        assert "gone.mp4" in job.error_message
        assert job.result_url is None
        assert harness.runner.calls == []
        assert not harness.workspaces[0].exists()

    def test_encoder_failure(self, harness, make_job, load_job):
        harness.runner.error = EncodingFailureError(1, "Invalid data found\n" * 200)
        job_id = make_job(payload=_payload("scene_1.mp4"))

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "encoding_failure"
        assert len(job.error_message) <= 500
        assert harness.publisher.uploads == []
        assert not harness.workspaces[0].exists()

    def test_publish_failure(self, harness, make_job, load_job):
        harness.publisher.error = PublishFailureError("upload rejected")
        job_id = make_job(payload=_payload("scene_1.mp4"))

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "publish_failure"

    def test_readiness_timeout(self, harness, make_job, load_job):
        job_id = make_job(payload={"scenes": [{"video_url": None}]})

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "readiness_timeout"
        assert harness.fetch_log == []

    def test_malformed_payload(self, harness, make_job, load_job):
        job_id = make_job(payload="{oops")

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "manifest_invalid"

    def test_unexpected_error_is_recorded(self, harness, make_job, load_job):
        harness.runner.error = RuntimeError("segfault")
        job_id = make_job(payload=_payload("scene_1.mp4"))

        harness.orchestrator.run_job(job_id)

        job = load_job(job_id)
        assert job.status == "failed"
        assert job.error_kind == "internal_error"
        assert job.error_message == "[internal_error] segfault"


class TestScheduling:
    def test_non_pending_job_is_skipped(self, harness, make_job, load_job):
        job_id = make_job(status="completed", progress=100)

        assert harness.orchestrator.run_job(job_id) is False
        assert load_job(job_id).status == "completed"

    def test_unknown_job_is_skipped(self, harness):
        assert harness.orchestrator.run_job("missing") is False

    def test_active_job_is_not_run_twice(self, harness, make_job, load_job):
        job_id = make_job(payload=_payload("scene_1.mp4"))
        assert harness.orchestrator._reserve(job_id)

        assert harness.orchestrator.run_job(job_id) is False
        assert load_job(job_id).status == "pending"

    def test_poll_claims_one_job_per_cycle(self, harness, make_job, load_job):
        first = make_job(payload=_payload("scene_1.mp4"))
        second = make_job(payload=_payload("scene_1.mp4"))

        future = harness.orchestrator.poll_once()
        future.result(timeout=10)

        assert load_job(first).status == "completed"
        assert load_job(second).status == "pending"

        harness.orchestrator.poll_once().result(timeout=10)
        assert load_job(second).status == "completed"
        assert harness.orchestrator.poll_once() is None
        assert harness.orchestrator.active_job_ids() == set()

    def test_poll_after_shutdown_does_nothing(self, harness, make_job, load_job):
        job_id = make_job(payload=_payload("scene_1.mp4"))
        harness.orchestrator.shutdown()

        assert harness.orchestrator.poll_once() is None
        assert load_job(job_id).status == "pending"
