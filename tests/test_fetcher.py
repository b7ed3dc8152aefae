"""Tests for the acquisition loop."""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
from conftest import make_settings

from skyclf.acquisition.fetcher import Fetcher, FetchError, NewImageEvent
from skyclf.catalogue import CleanupResult, MemoryCatalogue

URL = "http://camera.test/current.jpg"
T0 = datetime(2026, 3, 1, 21, 30, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeCamera:
    """MockTransport handler serving a scripted sequence of responses.

    Each entry is either bytes (200 with that body), an int status code, or an
    exception to raise. The last entry repeats once the script runs out.
    """

    def __init__(self, *script: bytes | int | Exception) -> None:
        self.script = list(script)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        if isinstance(step, int):
            return httpx.Response(step, content=b"")
        return httpx.Response(200, content=step)


def _clock(step: timedelta = timedelta(seconds=1)) -> Callable[[], datetime]:
    state = {"now": T0}

    def now() -> datetime:
        current = state["now"]
        state["now"] = current + step
        return current

    return now


def _fetcher(images_dir: Path, camera: FakeCamera, **kwargs: object) -> Fetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(camera))
    kwargs.setdefault("clock", _clock())
    return Fetcher(URL, images_dir, 0.01, client=client, **kwargs)  # type: ignore[arg-type]


@pytest.fixture()
def images_dir(tmp_path: Path) -> Path:
    path = tmp_path / "images"
    path.mkdir()
    return path


def _saved(images_dir: Path) -> list[str]:
    return sorted(p.name for p in images_dir.glob("*.jpg"))


# ---------------------------------------------------------------------------
# fetch_and_save
# ---------------------------------------------------------------------------


class TestFetchAndSave:
    async def test_identical_frames_saved_once(self, images_dir: Path) -> None:
        events: list[NewImageEvent] = []
        payload = bytes(range(100))
        fetcher = _fetcher(images_dir, FakeCamera(payload), on_new_image=events.append)

        results = [await fetcher.fetch_and_save() for _ in range(3)]

        assert results[0] is not None
        assert results[1:] == [None, None]
        assert len(_saved(images_dir)) == 1
        assert events == [results[0]]

    async def test_event_contents(self, images_dir: Path) -> None:
        payload = b"\xff\xd8frame\xff\xd9"
        fetcher = _fetcher(images_dir, FakeCamera(payload))

        event = await fetcher.fetch_and_save()

        assert event is not None
        assert event.filename == "20260301_213000_000000.jpg"
        assert event.path == images_dir / event.filename
        assert event.path.read_bytes() == payload
        assert event.sha256 == hashlib.sha256(payload).hexdigest()
        assert event.fetched_at == T0
        assert event.size_bytes == len(payload)

    async def test_changed_frames_saved_in_order(self, images_dir: Path) -> None:
        events: list[NewImageEvent] = []
        fetcher = _fetcher(images_dir, FakeCamera(b"A" * 10, b"B" * 10), on_new_image=events.append)

        await fetcher.fetch_and_save()
        await fetcher.fetch_and_save()

        assert len(events) == 2
        assert events[0].sha256 != events[1].sha256
        assert events[0].filename < events[1].filename
        assert _saved(images_dir) == [e.filename for e in events]

    async def test_only_last_saved_frame_is_remembered(self, images_dir: Path) -> None:
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B", b"A"))
        for _ in range(3):
            assert await fetcher.fetch_and_save() is not None
        assert len(_saved(images_dir)) == 3

    async def test_filenames_sort_by_capture_time(self, images_dir: Path) -> None:
        # Real clock; variable-length steps would break a naive format.
        payloads = [f"frame-{i}".encode() for i in range(5)]
        fetcher = _fetcher(images_dir, FakeCamera(*payloads), clock=lambda: datetime.now(UTC))

        events = [await fetcher.fetch_and_save() for _ in payloads]

        assert all(e is not None for e in events)
        by_time = [e.filename for e in sorted(events, key=lambda e: e.fetched_at)]  # type: ignore[union-attr]
        assert _saved(images_dir) == by_time

    async def test_non_200_is_fetch_error(self, images_dir: Path) -> None:
        events: list[NewImageEvent] = []
        fetcher = _fetcher(images_dir, FakeCamera(503, b"frame"), on_new_image=events.append)

        with pytest.raises(FetchError, match="status 503"):
            await fetcher.fetch_and_save()
        assert _saved(images_dir) == []
        assert events == []

        assert await fetcher.fetch_and_save() is not None

    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectError("connection refused"), httpx.ReadTimeout("timed out")],
    )
    async def test_transport_errors_are_fetch_errors(self, images_dir: Path, error: Exception) -> None:
        fetcher = _fetcher(images_dir, FakeCamera(error))
        with pytest.raises(FetchError):
            await fetcher.fetch_and_save()
        assert _saved(images_dir) == []

    async def test_write_failure_does_not_advance_hash(self, tmp_path: Path) -> None:
        images_dir = tmp_path / "not_yet_created"
        events: list[NewImageEvent] = []
        fetcher = _fetcher(images_dir, FakeCamera(b"frame"), on_new_image=events.append)

        with pytest.raises(OSError):
            await fetcher.fetch_and_save()
        assert events == []

        images_dir.mkdir()
        assert await fetcher.fetch_and_save() is not None
        assert len(events) == 1

    async def test_failing_observer_does_not_abort_tick(self, images_dir: Path) -> None:
        def explode(event: NewImageEvent) -> None:
            raise RuntimeError("observer down")

        fetcher = _fetcher(images_dir, FakeCamera(b"frame"), on_new_image=explode)

        assert await fetcher.fetch_and_save() is not None
        assert len(_saved(images_dir)) == 1

    async def test_records_frames_in_catalogue(self, images_dir: Path) -> None:
        catalogue = MemoryCatalogue()
        cleanups: list[CleanupResult] = []
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B", b"C"))
        fetcher.set_auto_cleanup(catalogue, 0, on_cleanup=cleanups.append)

        for _ in range(3):
            await fetcher.fetch_and_save()

        assert len(catalogue) == 3
        assert cleanups == []
        latest = catalogue.latest()
        assert latest is not None
        assert latest.sha256 == hashlib.sha256(b"C").hexdigest()

    async def test_auto_cleanup_keeps_ceiling(self, images_dir: Path) -> None:
        catalogue = MemoryCatalogue()
        cleanups: list[CleanupResult] = []
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"BB", b"CCC", b"DDDD"))
        fetcher.set_auto_cleanup(catalogue, 2, on_cleanup=cleanups.append)

        events = [await fetcher.fetch_and_save() for _ in range(4)]

        assert _saved(images_dir) == [e.filename for e in events[2:]]  # type: ignore[union-attr]
        assert len(catalogue) == 2
        assert [c.deleted_count for c in cleanups] == [1, 1]
        assert [c.freed_bytes for c in cleanups] == [1, 2]

    async def test_duplicate_frame_does_not_trigger_cleanup(self, images_dir: Path) -> None:
        catalogue = MemoryCatalogue()
        cleanups: list[CleanupResult] = []
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B", b"B"))
        fetcher.set_auto_cleanup(catalogue, 1, on_cleanup=cleanups.append)

        for _ in range(3):
            await fetcher.fetch_and_save()

        assert len(cleanups) == 1

    async def test_disk_work_runs_in_worker_threads(self, images_dir: Path) -> None:
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B"))
        fetcher.set_auto_cleanup(MemoryCatalogue(), 1)

        with patch("skyclf.acquisition.fetcher.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            event = await fetcher.fetch_and_save()

        assert event is not None
        write = to_thread.call_args_list[0].args[0]
        assert write.__self__ == event.path
        assert write.__name__ == "write_bytes"
        to_thread.assert_any_call(fetcher._retention.evict)  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# latest_image
# ---------------------------------------------------------------------------


class TestLatestImage:
    async def test_none_when_empty(self, images_dir: Path, tmp_path: Path) -> None:
        assert _fetcher(images_dir, FakeCamera(b"x")).latest_image() is None
        assert _fetcher(tmp_path / "missing", FakeCamera(b"x")).latest_image() is None

    async def test_returns_greatest_name(self, images_dir: Path) -> None:
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B"))
        await fetcher.fetch_and_save()
        second = await fetcher.fetch_and_save()
        (images_dir / "zzz.png").write_bytes(b"other format")

        assert second is not None
        assert fetcher.latest_image() == second.path

    async def test_suffix_match_is_case_insensitive(self, images_dir: Path) -> None:
        fetcher = _fetcher(images_dir, FakeCamera(b"A"))
        await fetcher.fetch_and_save()
        upper = images_dir / "29991231_235959_000000.JPG"
        upper.write_bytes(b"manual copy")
        (images_dir / "29991231_235959_999999.jpg").mkdir()

        assert fetcher.latest_image() == upper


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    async def test_creates_directory_and_stops(self, tmp_path: Path) -> None:
        images_dir = tmp_path / "nested" / "images"
        stop = asyncio.Event()
        fetcher = _fetcher(images_dir, FakeCamera(b"A", b"B"), on_new_image=lambda e: stop.set())

        await asyncio.wait_for(fetcher.run(stop), timeout=5)

        assert images_dir.is_dir()
        assert len(_saved(images_dir)) == 1

    async def test_fetches_once_even_if_already_stopped(self, tmp_path: Path) -> None:
        camera = FakeCamera(b"A")
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(_fetcher(tmp_path / "images", camera).run(stop), timeout=5)

        assert camera.calls == 1

    async def test_survives_transient_failures(self, tmp_path: Path) -> None:
        images_dir = tmp_path / "images"
        camera = FakeCamera(500, httpx.ConnectError("down"), b"A", b"A", b"B")
        events: list[NewImageEvent] = []
        stop = asyncio.Event()

        def on_new_image(event: NewImageEvent) -> None:
            events.append(event)
            if len(events) == 2:
                stop.set()

        await asyncio.wait_for(_fetcher(images_dir, camera, on_new_image=on_new_image).run(stop), timeout=5)

        assert camera.calls == 5
        assert len(events) == 2
        assert len(_saved(images_dir)) == 2

    async def test_uncreatable_directory_is_fatal(self, tmp_path: Path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        camera = FakeCamera(b"A")

        with pytest.raises(OSError):
            await _fetcher(blocker / "images", camera).run(asyncio.Event())
        assert camera.calls == 0


class TestLifecycle:
    async def test_from_settings(self, tmp_path: Path) -> None:
        settings = make_settings(images_dir=str(tmp_path), poll_interval=5.0, fetch_timeout=7.5)
        fetcher = Fetcher.from_settings(settings)

        assert fetcher.images_dir == tmp_path
        assert fetcher._poll_interval == 5.0
        assert fetcher._client.timeout.read == 7.5
        await fetcher.aclose()
        assert fetcher._client.is_closed

    async def test_does_not_close_injected_client(self, images_dir: Path) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(FakeCamera(b"A")))
        async with Fetcher(URL, images_dir, 1.0, client=client):
            pass
        assert not client.is_closed
        await client.aclose()
