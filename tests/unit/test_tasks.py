"""Unit tests for the built-in task types."""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from pathlib import Path

import httpx
import pytest

from quakewatch.core.exceptions import CommandFailedError, ConfigError, PayloadValidationError
from quakewatch.core.models import ErrorKind, TaskResult
from quakewatch.resilience.classification import classify
from quakewatch.resilience.http_client import GuardedHttpClient
from quakewatch.tasks import CommandTask, FeedPollTask, FunctionTask

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="subprocess quoting differs")


# ---------------------------------------------------------------------------
# FunctionTask
# ---------------------------------------------------------------------------


class TestFunctionTask:
    @pytest.mark.asyncio
    async def test_sync_callable_int_result(self) -> None:
        task = FunctionTask(lambda args: len(args), name="count")
        result = await task.run(["a", "b"])
        assert result == TaskResult(items_produced=2)
        assert task.name == "count"

    @pytest.mark.asyncio
    async def test_async_callable_task_result(self) -> None:
        async def collect(args: tuple[str, ...]) -> TaskResult:
            return TaskResult(items_produced=5, detail="ok")

        task = FunctionTask(collect)
        assert task.name == "collect"
        assert (await task.run(())).items_produced == 5

    @pytest.mark.asyncio
    async def test_sync_callable_runs_off_the_event_loop_thread(self) -> None:
        loop_thread = threading.get_ident()
        seen: list[int] = []

        def collect(args: tuple[str, ...]) -> int:
            seen.append(threading.get_ident())
            return 1

        await FunctionTask(collect).run(())
        assert seen and seen[0] != loop_thread

    @pytest.mark.asyncio
    async def test_none_means_no_count(self) -> None:
        result = await FunctionTask(lambda args: None).run(())
        assert result.items_produced is None

    @pytest.mark.asyncio
    async def test_unsupported_return_is_type_error(self) -> None:
        with pytest.raises(TypeError):
            await FunctionTask(lambda args: "five").run(())

    @pytest.mark.asyncio
    async def test_bool_is_not_a_count(self) -> None:
        with pytest.raises(TypeError):
            await FunctionTask(lambda args: True).run(())


# ---------------------------------------------------------------------------
# CommandTask
# ---------------------------------------------------------------------------


class TestCommandTask:
    def test_empty_program_rejected(self) -> None:
        with pytest.raises(ConfigError):
            CommandTask("")

    @posix_only
    @pytest.mark.asyncio
    async def test_success_reports_last_item_count(self) -> None:
        script = "print('items_produced=3'); print('progress'); print('items_produced=7')"
        result = await CommandTask(sys.executable).run(["-c", script])
        assert result.items_produced == 7
        assert result.detail == "exit 0"

    @posix_only
    @pytest.mark.asyncio
    async def test_success_without_count(self) -> None:
        result = await CommandTask(sys.executable).run(["-c", "print('done')"])
        assert result.items_produced is None

    @posix_only
    @pytest.mark.asyncio
    async def test_nonzero_exit_carries_stderr_tail(self) -> None:
        script = "import sys; sys.stderr.write('bad feed\\n'); sys.exit(1)"
        with pytest.raises(CommandFailedError) as excinfo:
            await CommandTask(sys.executable).run(["-c", script])
        assert excinfo.value.returncode == 1
        assert "bad feed" in excinfo.value.stderr_tail
        assert classify(excinfo.value) == ErrorKind.UNKNOWN

    @posix_only
    @pytest.mark.asyncio
    async def test_usage_error_is_configuration(self) -> None:
        with pytest.raises(CommandFailedError) as excinfo:
            await CommandTask(sys.executable).run(["-c", "import sys; sys.exit(2)"])
        assert classify(excinfo.value) == ErrorKind.CONFIGURATION

    @posix_only
    @pytest.mark.asyncio
    async def test_very_long_output_line_does_not_fail(self) -> None:
        script = "print('x' * 200000); print('items_produced=4')"
        result = await CommandTask(sys.executable).run(["-c", script])
        assert result.items_produced == 4

    @posix_only
    @pytest.mark.asyncio
    async def test_child_killed_when_reading_output_fails(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        pid_file = tmp_path / "child.pid"
        script = (
            "import os, time\n"
            f"with open({str(pid_file)!r}, 'w') as fh: fh.write(str(os.getpid()))\n"
            "print('started', flush=True)\n"
            "time.sleep(30)\n"
        )

        async def failing_pump(
            self: CommandTask, stream: asyncio.StreamReader, items: list[int]
        ) -> None:
            await stream.readline()
            raise RuntimeError("log sink failed")

        monkeypatch.setattr(CommandTask, "_pump_stdout", failing_pump)
        with pytest.raises(RuntimeError):
            await asyncio.wait_for(CommandTask(sys.executable).run(["-c", script]), timeout=10)

        pid = int(pid_file.read_text())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)

    @pytest.mark.asyncio
    async def test_missing_program_is_config_error(self) -> None:
        with pytest.raises(ConfigError):
            await CommandTask("/nonexistent/quakewatch-collector").run([])


# ---------------------------------------------------------------------------
# FeedPollTask
# ---------------------------------------------------------------------------

_FEED = {
    "type": "FeatureCollection",
    "metadata": {"title": "USGS All Earthquakes, Past Hour", "count": 2},
    "features": [{"id": "a"}, {"id": "b"}],
}


def _feed_task(payload: object, status: int = 200) -> FeedPollTask:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload)

    client = GuardedHttpClient(source="usgs", transport=httpx.MockTransport(handler))
    return FeedPollTask(client, "https://feed.example.test/all_hour.geojson")


class TestFeedPollTask:
    @pytest.mark.asyncio
    async def test_counts_features(self) -> None:
        async with _feed_task(_FEED) as task:
            result = await task.run(())
        assert result.items_produced == 2
        assert result.detail == "USGS All Earthquakes, Past Hour"
        assert task.name == "feed:usgs"

    @pytest.mark.asyncio
    async def test_empty_feed_reports_zero(self) -> None:
        async with _feed_task({"type": "FeatureCollection", "features": []}) as task:
            result = await task.run(())
        assert result.items_produced == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [[1, 2, 3], {"type": "FeatureCollection"}, {"features": []}],
    )
    async def test_malformed_payload_is_validation_error(self, payload: object) -> None:
        async with _feed_task(payload) as task:
            with pytest.raises(PayloadValidationError):
                await task.run(())
