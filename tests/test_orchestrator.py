from __future__ import annotations

import asyncio
import time
from typing import List

from fakes import ARTICLE_HTML, ARTICLE_URL, EXPANDABLE_HTML, FakeBackend, fast_options

from wx_mdx.backend import SingleFlightBackendFactory
from wx_mdx.config import CrawlConfig
from wx_mdx.errors import SessionCancelled
from wx_mdx.orchestrator import NO_USABLE_CONTENT, Orchestrator, aggregate_result
from wx_mdx.state import STATUS_COMPLETED, STATUS_FAILED
from wx_mdx.steps import (
    CLICK_EXPAND,
    FINAL_SNAPSHOT,
    INITIAL_SNAPSHOT,
    NAVIGATE,
    SCREENSHOT,
    WAIT_CONTENT_LOAD,
    WAIT_PAGE_LOAD,
    CrawlContext,
)
from wx_mdx.extract import RegexExtractor
from wx_mdx.utils import utc_now


def _orchestrator(backend: FakeBackend) -> Orchestrator:
    return Orchestrator(lambda: backend, config=CrawlConfig())


def _attempted(orchestrator: Orchestrator, session_id: str) -> List[str]:
    state = orchestrator.store.get_session(session_id)
    assert state is not None
    return list(state.step_results)


def test_plan_lists_catalog_in_order() -> None:
    orchestrator = _orchestrator(FakeBackend())
    plan = orchestrator.plan(ARTICLE_URL, fast_options())
    assert [step.name for step in plan] == [
        NAVIGATE,
        WAIT_PAGE_LOAD,
        INITIAL_SNAPSHOT,
        CLICK_EXPAND,
        WAIT_CONTENT_LOAD,
        FINAL_SNAPSHOT,
        SCREENSHOT,
    ]
    assert plan[0].retryable is False
    assert all(step.retryable for step in plan[1:])


def test_article_without_expand_marker_skips_click_and_content_wait() -> None:
    backend = FakeBackend(snapshots=["<html><body>plain page</body></html>", '<h1 id="activity-name">Hello</h1>'])
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run("https://mp.weixin.qq.com/s/abc", fast_options()))

    assert result.success
    assert result.title == "Hello"
    assert backend.count("click") == 0
    assert backend.count("wait_for", "#js_content") == 0
    assert backend.count("wait_for", ".rich_media_js") == 0
    attempted = _attempted(orchestrator, result.session_id)
    assert CLICK_EXPAND not in attempted
    assert WAIT_CONTENT_LOAD not in attempted
    assert backend.closed


def test_article_with_expand_marker_clicks_then_waits() -> None:
    backend = FakeBackend(snapshots=[EXPANDABLE_HTML, ARTICLE_HTML])
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert result.success
    assert result.title == "微信文章标题"
    assert result.author == "测试公众号"
    assert result.publish_time == "2024-01-15 10:30"
    assert _attempted(orchestrator, result.session_id) == [
        NAVIGATE,
        WAIT_PAGE_LOAD,
        INITIAL_SNAPSHOT,
        CLICK_EXPAND,
        WAIT_CONTENT_LOAD,
        FINAL_SNAPSHOT,
        SCREENSHOT,
    ]
    assert backend.ops() == [
        "navigate",
        "wait_for",
        "snapshot",
        "wait_for",
        "click",
        "wait_for",
        "snapshot",
        "screenshot",
        "close",
    ]
    status = orchestrator.get_status(result.session_id)
    assert status is not None
    assert status.status == STATUS_COMPLETED
    assert status.progress == 100


def test_navigate_timeout_fails_session_without_snapshots() -> None:
    backend = FakeBackend(raises={"navigate": TimeoutError("Navigation timeout of 30000 ms exceeded")})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert not result.success
    assert "Navigation timeout of 30000 ms exceeded" in result.error
    assert backend.count("snapshot") == 0
    assert backend.ops() == ["navigate", "close"]
    status = orchestrator.get_status(result.session_id)
    assert status.status == STATUS_FAILED
    assert status.error is not None


def test_navigate_failure_response_stops_everything() -> None:
    backend = FakeBackend(failures={"navigate": 1})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert not result.success
    assert result.error == "Step navigate failed: navigate failed"
    assert backend.ops() == ["navigate", "close"]


def test_invalid_url_never_reaches_backend() -> None:
    backend = FakeBackend()
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run("https://example.com/s/abc", fast_options()))

    assert not result.success
    assert "Invalid article URL" in result.error
    assert backend.ops() == ["close"]
    state = orchestrator.store.get_session(result.session_id)
    assert state.step_results[NAVIGATE].failure_reason == "precondition_failed"
    assert orchestrator.get_status(result.session_id).status == STATUS_FAILED


def test_failing_wait_is_retried_and_skipped() -> None:
    backend = FakeBackend(failures={"wait_for:.rich_media_content": 99})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=3)))

    assert result.success
    assert backend.count("wait_for", ".rich_media_content") == 3
    assert backend.count("snapshot") == 2
    assert backend.count("screenshot") == 1
    state = orchestrator.store.get_session(result.session_id)
    assert len(state.errors) == 1
    error = state.errors[0]
    assert error.step_name == WAIT_PAGE_LOAD
    assert error.retryable is True
    assert "wait_page_load" in error.message
    assert orchestrator.get_status(result.session_id).status == STATUS_COMPLETED


def test_retry_attempts_of_one_means_a_single_try() -> None:
    backend = FakeBackend(failures={"screenshot": 99})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=1)))

    assert result.success
    assert backend.count("screenshot") == 1


def test_transient_failure_recovers_on_retry() -> None:
    backend = FakeBackend(failures={"snapshot": 1})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=3)))

    assert result.success
    assert backend.count("snapshot") == 3
    assert orchestrator.store.get_session(result.session_id).errors == []


def test_missing_final_snapshot_means_no_usable_content() -> None:
    backend = FakeBackend(failures={"snapshot": 99})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=2)))

    assert not result.success
    assert result.error == NO_USABLE_CONTENT
    assert orchestrator.get_status(result.session_id).status == STATUS_FAILED


def test_progress_never_decreases() -> None:
    observed: List[int] = []
    orchestrator_holder: List[Orchestrator] = []

    def record(op: str, detail: object) -> None:
        for status in orchestrator_holder[0].list_statuses():
            observed.append(status.progress)

    backend = FakeBackend(snapshots=[EXPANDABLE_HTML, ARTICLE_HTML], failures={"click": 1}, on_call=record)
    orchestrator = _orchestrator(backend)
    orchestrator_holder.append(orchestrator)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))
    observed.append(orchestrator.get_status(result.session_id).progress)

    assert observed == sorted(observed)
    assert observed[-1] == 100


def test_terminal_status_after_every_run() -> None:
    scenarios = [
        FakeBackend(),
        FakeBackend(failures={"navigate": 1}),
        FakeBackend(failures={"snapshot": 99}),
        FakeBackend(raises={"screenshot": RuntimeError("boom")}),
    ]
    for backend in scenarios:
        orchestrator = _orchestrator(backend)
        result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=2)))
        status = orchestrator.get_status(result.session_id)
        assert status.status in {STATUS_COMPLETED, STATUS_FAILED}
        assert status.end_time is not None
        assert backend.closed


def test_aggregation_is_pure() -> None:
    backend = FakeBackend()
    orchestrator = _orchestrator(backend)
    captured: List[CrawlContext] = []
    original = orchestrator.execute_sequence

    async def capture(steps, context):
        captured.append(context)
        return await original(steps, context)

    orchestrator.execute_sequence = capture  # type: ignore[assignment]
    asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    context = captured[0]
    finished = utc_now()
    first = aggregate_result(context, RegexExtractor(), finished)
    second = aggregate_result(context, RegexExtractor(), finished)
    assert first == second
    assert first.title == "微信文章标题"


def test_cancel_stops_session_before_next_step() -> None:
    holder: List[Orchestrator] = []

    def cancel_on_snapshot(op: str, detail: object) -> None:
        if op == "snapshot":
            session_id = holder[0].list_statuses()[0].session_id
            assert holder[0].cancel(session_id)

    backend = FakeBackend(on_call=cancel_on_snapshot)
    orchestrator = _orchestrator(backend)
    holder.append(orchestrator)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert not result.success
    assert result.error == str(SessionCancelled(result.session_id))
    assert backend.count("snapshot") == 1
    assert backend.count("screenshot") == 0
    assert backend.closed
    assert orchestrator.get_status(result.session_id).status == STATUS_FAILED


def test_cancel_unknown_session_is_false() -> None:
    orchestrator = _orchestrator(FakeBackend())
    assert orchestrator.cancel("missing") is False


def test_session_deadline_fails_the_session() -> None:
    backend = FakeBackend(hang={"wait_for:.rich_media_content"})
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(session_timeout_ms=50)))

    assert not result.success
    assert "deadline" in result.error
    assert backend.closed
    assert orchestrator.get_status(result.session_id).status == STATUS_FAILED


def test_invalid_options_fail_the_session() -> None:
    orchestrator = _orchestrator(FakeBackend())
    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(retry_attempts=0)))
    assert not result.success
    assert "retry_attempts" in result.error
    assert orchestrator.get_status(result.session_id).status == STATUS_FAILED


def test_worst_case_covers_retries_and_delays() -> None:
    orchestrator = _orchestrator(FakeBackend())
    options = fast_options(retry_attempts=2, retry_base_delay_ms=100, delay_between_steps_ms=10)
    plan = orchestrator.plan(ARTICLE_URL, options)
    expected = options.timeout_ms
    for step in plan[1:]:
        expected += step.timeout_ms * 2 + 100
    expected += 10 * (len(plan) - 1)
    assert Orchestrator.worst_case_ms(plan, options) == expected


def test_single_flight_serializes_sessions() -> None:
    seen_at_second_navigate: List[List[str]] = []
    holder: List[Orchestrator] = []
    navigations: List[str] = []

    def watch(op: str, detail: object) -> None:
        if op == "navigate":
            navigations.append(str(detail))
            if len(navigations) == 2:
                seen_at_second_navigate.append([s.status for s in holder[0].list_statuses()])

    shared = FakeBackend(on_call=watch)
    factory = SingleFlightBackendFactory(shared)
    orchestrator = Orchestrator(factory)
    holder.append(orchestrator)

    async def run_both():
        return await asyncio.gather(
            orchestrator.run("https://mp.weixin.qq.com/s/first", fast_options()),
            orchestrator.run("https://mp.weixin.qq.com/s/second", fast_options()),
        )

    results = asyncio.run(run_both())

    assert all(result.success for result in results)
    ops = shared.ops()
    first_block, second_block = ops[:5], ops[5:]
    assert first_block == ["navigate", "wait_for", "snapshot", "snapshot", "screenshot"]
    assert second_block == first_block
    assert sorted(seen_at_second_navigate[0]) == [STATUS_COMPLETED, "running"]
    assert not shared.closed


def test_single_flight_lease_wait_does_not_eat_navigate_timeout() -> None:
    shared = FakeBackend(slow={"wait_for:.rich_media_content": 0.3})
    orchestrator = Orchestrator(SingleFlightBackendFactory(shared))

    async def run_both():
        return await asyncio.gather(
            orchestrator.run("https://mp.weixin.qq.com/s/first", fast_options(timeout_ms=200)),
            orchestrator.run("https://mp.weixin.qq.com/s/second", fast_options(timeout_ms=200)),
        )

    first, second = asyncio.run(run_both())

    assert first.success
    assert second.success, second.error
    assert shared.count("navigate") == 2


def test_expand_flag_survives_final_snapshot() -> None:
    backend = FakeBackend(snapshots=[EXPANDABLE_HTML, ARTICLE_HTML])
    orchestrator = _orchestrator(backend)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert backend.count("click") == 1
    metadata = orchestrator.store.get_session(result.session_id).metadata
    assert metadata.has_expand_button is True
    assert metadata.image_count == 1
    assert metadata.word_count > 0


def _record_pauses(orchestrator: Orchestrator) -> List[int]:
    delays: List[int] = []

    async def record(delay_ms: int, context: CrawlContext) -> None:
        delays.append(delay_ms)
        context.raise_if_cancelled()

    orchestrator._pause = record  # type: ignore[assignment]
    return delays


def test_backoff_grows_linearly_and_stops_after_last_attempt() -> None:
    backend = FakeBackend(failures={"screenshot": 99})
    orchestrator = _orchestrator(backend)
    delays = _record_pauses(orchestrator)
    options = fast_options(retry_attempts=3, retry_base_delay_ms=100, delay_between_steps_ms=7)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, options))

    assert result.success
    assert backend.count("screenshot") == 3
    # navigate, wait_page_load, initial_snapshot, final_snapshot, then screenshot retries
    assert delays == [7, 7, 7, 7, 100, 200]


def test_no_step_delay_after_last_step_of_full_plan() -> None:
    backend = FakeBackend(snapshots=[EXPANDABLE_HTML, ARTICLE_HTML])
    orchestrator = _orchestrator(backend)
    delays = _record_pauses(orchestrator)

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options(delay_between_steps_ms=5)))

    assert result.success
    assert delays == [5] * 6


def test_cancel_wakes_retry_pause_early() -> None:
    holder: List[Orchestrator] = []

    def cancel_soon(op: str, detail: object) -> None:
        if op == "screenshot":
            session_id = holder[0].list_statuses()[0].session_id
            asyncio.get_running_loop().call_later(0.05, holder[0].cancel, session_id)

    backend = FakeBackend(failures={"screenshot": 99}, on_call=cancel_soon)
    orchestrator = _orchestrator(backend)
    holder.append(orchestrator)
    options = fast_options(retry_attempts=3, retry_base_delay_ms=5_000)

    started = time.perf_counter()
    result = asyncio.run(orchestrator.run(ARTICLE_URL, options))
    elapsed = time.perf_counter() - started

    assert elapsed < 2
    assert not result.success
    assert result.error == str(SessionCancelled(result.session_id))
    assert backend.count("screenshot") == 1
    assert backend.closed


def test_stray_timeout_without_deadline_is_reported_as_is() -> None:
    def broken_rule(completed, context, remaining):
        raise TimeoutError("rule timed out")

    backend = FakeBackend()
    orchestrator = Orchestrator(lambda: backend, config=CrawlConfig(), rules=[("broken", broken_rule)])

    result = asyncio.run(orchestrator.run(ARTICLE_URL, fast_options()))

    assert not result.success
    assert result.error == "rule timed out"
    assert "deadline" not in result.error
    assert backend.closed
