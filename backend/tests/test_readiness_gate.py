import threading
import time

import pytest

from database.models import RenderJob
from models.render_errors import (
    ManifestInvalidError,
    ReadinessTimeoutError,
    RenderCancelledError,
)
from operators.readiness_gate import await_readiness


def _counting(session_factory):
    """Wrap a session factory and count how many times the job is polled."""
    counter = {"polls": 0}

    def _factory():
        counter["polls"] += 1
        return session_factory()

    return _factory, counter


def test_ready_payload_returns_immediately(session_factory, make_job):
    job_id = make_job(payload={"scenes": [{"video_url": "a.mp4"}, {"video_url": "b.mp4"}]})
    factory, counter = _counting(session_factory)

    manifest = await_readiness(job_id, factory, poll_interval_seconds=0, max_attempts=3)

    assert [scene.media_reference for scene in manifest.scenes] == ["a.mp4", "b.mp4"]
    assert counter["polls"] == 1


def test_times_out_after_exactly_max_attempts(session_factory, make_job):
    job_id = make_job(payload={"scenes": [{"video_url": "a.mp4"}, {"video_url": None}]})
    factory, counter = _counting(session_factory)

    with pytest.raises(ReadinessTimeoutError) as exc_info:
        await_readiness(job_id, factory, poll_interval_seconds=0, max_attempts=3)

    assert counter["polls"] == 3
    assert exc_info.value.attempts == 3


def test_missing_payload_is_waited_on(session_factory, make_job):
    job_id = make_job(payload=None)

    with pytest.raises(ReadinessTimeoutError):
        await_readiness(job_id, session_factory, poll_interval_seconds=0, max_attempts=2)


def test_empty_scene_list_is_waited_on(session_factory, make_job):
    job_id = make_job(payload={"scenes": []})

    with pytest.raises(ReadinessTimeoutError):
        await_readiness(job_id, session_factory, poll_interval_seconds=0, max_attempts=2)


def test_becomes_ready_between_polls(session_factory, make_job):
    job_id = make_job(payload={"scenes": [{"video_url": None}]})
    factory, counter = _counting(session_factory)

    def _complete_generation():
        session = session_factory()
        try:
            job = session.query(RenderJob).filter(RenderJob.job_id == job_id).first()
            job.payload = {"scenes": [{"video_url": "done.mp4"}]}
            session.commit()
        finally:
            session.close()

    original = factory

    def _factory():
        if counter["polls"] == 1:
            _complete_generation()
        return original()

    manifest = await_readiness(job_id, _factory, poll_interval_seconds=0, max_attempts=5)

    assert manifest.scenes[0].media_reference == "done.mp4"
    assert counter["polls"] == 2


def test_malformed_payload_fails_immediately(session_factory, make_job):
    job_id = make_job(payload="{broken")
    factory, counter = _counting(session_factory)

    with pytest.raises(ManifestInvalidError):
        await_readiness(job_id, factory, poll_interval_seconds=0, max_attempts=5)

    assert counter["polls"] == 1


def test_missing_job_fails_immediately(session_factory):
    with pytest.raises(ManifestInvalidError):
        await_readiness("nope", session_factory, poll_interval_seconds=0, max_attempts=5)


def test_stop_event_interrupts_wait(session_factory, make_job):
    job_id = make_job(payload={"scenes": []})
    stop_event = threading.Event()
    threading.Timer(0.1, stop_event.set).start()

    started = time.monotonic()
    with pytest.raises(RenderCancelledError):
        await_readiness(
            job_id,
            session_factory,
            poll_interval_seconds=30,
            max_attempts=5,
            stop_event=stop_event,
        )

    assert time.monotonic() - started < 5


def test_deadline_cancels(session_factory, make_job):
    job_id = make_job(payload={"scenes": []})

    with pytest.raises(RenderCancelledError):
        await_readiness(
            job_id,
            session_factory,
            poll_interval_seconds=30,
            max_attempts=5,
            deadline=time.monotonic() + 0.1,
        )
