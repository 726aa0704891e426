"""Tests for localdiffuse.profiling.tracer (JSONL stage/step events)."""

from __future__ import annotations

import json
import threading

import pytest

from localdiffuse.handlers.generate import GenerationOrchestrator
from localdiffuse.profiling.tracer import GenerationTracer, get_current_tracer, set_current_tracer


def _events(path) -> list[dict]:
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


@pytest.fixture()
def tracer(tmp_path):
    t = GenerationTracer(str(tmp_path / "trace" / "gen.jsonl"), backend="test")
    set_current_tracer(t)
    yield t
    set_current_tracer(None)
    t.close()


class TestGenerationTracer:
    def test_record_fields(self, tracer):
        tracer.denoise_step("job1", 2, 10, 901.0, 0.25)
        tracer.close()
        (event,) = _events(tracer.path)
        assert event["type"] == "denoise_step"
        assert event["job_id"] == "job1"
        assert event["backend"] == "test"
        assert event["step"] == 2 and event["total_steps"] == 10
        assert event["duration_s"] == 0.25

    def test_thread_local(self, tracer):
        seen = []
        thread = threading.Thread(target=lambda: seen.append(get_current_tracer()))
        thread.start()
        thread.join()
        assert get_current_tracer() is tracer
        assert seen == [None]

    def test_pipeline_events(self, tracer, make_request, services):
        orch = GenerationOrchestrator(make_request(steps=3), services)
        orch.run()
        tracer.close()

        events = _events(tracer.path)
        assert {e["job_id"] for e in events} == {orch.job.job_id}
        stages = [e["stage"] for e in events if e["type"] == "stage_complete"]
        assert stages == ["text_encode", "denoise", "vae_decode"]
        steps = [e["step"] for e in events if e["type"] == "denoise_step"]
        assert steps == [1, 2, 3]
