from __future__ import annotations

import json

import pytest

from app.core.scheduling import DelayedTaskScheduler
from app.models.pipeline import ManualRunResult
from app.workers import pipeline_bot
from tests.fixtures import FakeClock


class StubPipeline:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.clock = FakeClock()
        self.scheduler = DelayedTaskScheduler(self.clock)
        self.track_runs = True
        self.manual_runs = 0
        self.publisher_runs = 0

    async def trigger_manual_run(self) -> ManualRunResult:
        self.manual_runs += 1
        return ManualRunResult(success=self.success, message="done", duration_ms=5)

    async def run_publisher_only(self):
        self.publisher_runs += 1
        return object()


@pytest.fixture
def stub_pool(monkeypatch: pytest.MonkeyPatch):
    events = []

    async def fake_init():
        events.append("init")

    async def fake_close():
        events.append("close")

    monkeypatch.setattr(pipeline_bot, "init_db_pool", fake_init)
    monkeypatch.setattr(pipeline_bot, "close_db_pool", fake_close)
    return events


def test_parse_args_modes() -> None:
    assert pipeline_bot.parse_args([]).once is False
    assert pipeline_bot.parse_args(["--once"]).once is True
    assert pipeline_bot.parse_args(["--publisher-only", "--no-tracking"]).no_tracking is True
    with pytest.raises(SystemExit):
        pipeline_bot.parse_args(["--once", "--publisher-only"])


@pytest.mark.asyncio
async def test_once_prints_result_and_exits_zero(monkeypatch: pytest.MonkeyPatch, stub_pool, capsys) -> None:
    stub = StubPipeline(success=True)
    monkeypatch.setattr(pipeline_bot, "build_default_pipeline", lambda: stub)

    code = await pipeline_bot.main_async(["--once", "--no-tracking"])

    assert code == 0
    assert stub.manual_runs == 1
    assert stub.track_runs is False
    assert stub_pool == ["init", "close"]
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith('{"success"')]
    assert json.loads(lines[-1]) == {"success": True, "message": "done", "duration_ms": 5}


@pytest.mark.asyncio
async def test_once_failure_exits_one(monkeypatch: pytest.MonkeyPatch, stub_pool) -> None:
    monkeypatch.setattr(pipeline_bot, "build_default_pipeline", lambda: StubPipeline(success=False))
    assert await pipeline_bot.main_async(["--once"]) == 1


@pytest.mark.asyncio
async def test_publisher_only_drains_once(monkeypatch: pytest.MonkeyPatch, stub_pool) -> None:
    stub = StubPipeline()
    monkeypatch.setattr(pipeline_bot, "build_default_pipeline", lambda: stub)

    assert await pipeline_bot.main_async(["--publisher-only"]) == 0
    assert stub.publisher_runs == 1
    assert stub.manual_runs == 0
