"""Plans, executes and aggregates the step sequence of a crawl session."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .backend import BackendFactory, ToolBackend
from .config import CrawlConfig, CrawlOptions
from .errors import SessionCancelled, SessionDeadlineExceeded, StepFailedError
from .extract import Extractor, RegexExtractor
from .models import CrawlResult, ErrorRecord, SessionStatus, StepResult
from .state import SessionStateStore
from .steps import (
    FINAL_SNAPSHOT,
    INITIAL_SNAPSHOT,
    WAIT_CONTENT_LOAD,
    ClickStep,
    CrawlContext,
    NavigateStep,
    ScreenshotStep,
    SnapshotStep,
    Step,
    WaitStep,
    has_expand_marker,
)
from .utils import elapsed_ms, utc_now

logger = logging.getLogger("wx_mdx.orchestrator")

NO_USABLE_CONTENT = "no usable content"

Plan = Tuple[Step, ...]
ReplanRule = Callable[[Step, CrawlContext, Plan], Optional[Plan]]


def skip_expand_when_absent(completed: Step, context: CrawlContext, remaining: Plan) -> Optional[Plan]:
    """Drop the expand click and its follow-up wait when nothing can expand."""
    if completed.name != INITIAL_SNAPSHOT:
        return None
    result = context.step_results.get(INITIAL_SNAPSHOT)
    if result is None or not result.success or not isinstance(result.data, str):
        return None
    if has_expand_marker(result.data):
        return None
    return tuple(
        step
        for step in remaining
        if "click" not in step.name
        and "expand" not in step.name
        and step.name != WAIT_CONTENT_LOAD
    )


REPLAN_RULES: Tuple[Tuple[str, ReplanRule], ...] = (
    ("skip_expand_when_absent", skip_expand_when_absent),
)


def aggregate_result(
    context: CrawlContext,
    extractor: Extractor,
    finished_at: dt.datetime,
) -> CrawlResult:
    """Fold the stored step results into a ``CrawlResult``.

    Depends only on its arguments, so repeated calls agree.
    """
    common = dict(
        url=context.url,
        crawl_time=finished_at,
        duration_ms=elapsed_ms(context.start_time, finished_at),
        session_id=context.session_id,
    )
    final = context.step_results.get(FINAL_SNAPSHOT)
    if (
        final is None
        or not final.success
        or not isinstance(final.data, str)
        or not final.data.strip()
    ):
        return CrawlResult(success=False, error=NO_USABLE_CONTENT, **common)

    metadata = extractor.extract(final.data)
    return CrawlResult(
        success=True,
        title=metadata.title,
        author=metadata.author,
        publish_time=metadata.publish_time,
        content=final.data,
        **common,
    )


class Orchestrator:
    """Runs one crawl session per ``run`` call against a fresh backend."""

    def __init__(
        self,
        backend_factory: BackendFactory,
        store: Optional[SessionStateStore] = None,
        config: Optional[CrawlConfig] = None,
        extractor: Optional[Extractor] = None,
        rules: Sequence[Tuple[str, ReplanRule]] = REPLAN_RULES,
    ) -> None:
        self.config = config or CrawlConfig()
        self.store = store or SessionStateStore(
            cleanup_interval=self.config.cleanup_interval,
            max_age_ms=self.config.session_max_age_ms,
        )
        self.extractor = extractor or RegexExtractor()
        self.rules = tuple(rules)
        self._backend_factory = backend_factory
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def plan(self, url: str, options: CrawlOptions) -> Plan:
        return (
            NavigateStep.to(url, timeout_ms=options.timeout_ms, allowed_hosts=self.config.allowed_hosts),
            WaitStep.for_page_load(),
            SnapshotStep.initial(),
            ClickStep.for_expand_button(),
            WaitStep.for_content_load(),
            SnapshotStep.final(),
            ScreenshotStep.full(),
        )

    @staticmethod
    def worst_case_ms(plan: Sequence[Step], options: CrawlOptions) -> int:
        """Upper bound on a sequence's duration, including every retry and delay."""
        total = 0
        for step in plan:
            attempts = options.retry_attempts if step.retryable else 1
            total += step.timeout_ms * attempts
            total += sum(attempt * options.retry_base_delay_ms for attempt in range(1, attempts))
        total += options.delay_between_steps_ms * max(0, len(plan) - 1)
        return total

    async def run(self, url: str, options: Optional[CrawlOptions] = None) -> CrawlResult:
        """Crawl ``url`` and return its result; failures come back as results."""
        options = options or self.config.default_options
        session_id = self.store.create_session(url)
        cancel_event = asyncio.Event()
        self._cancel_events[session_id] = cancel_event
        started = utc_now()
        backend: Optional[ToolBackend] = None
        context: Optional[CrawlContext] = None
        success = False
        logger.info("Starting session %s for %s", session_id, url)

        try:
            options.validate()
            backend = self._backend_factory()
            context = CrawlContext(
                session_id=session_id,
                url=url,
                options=options,
                backend=backend,
                store=self.store,
                start_time=started,
                screenshot_dir=self.config.screenshot_dir,
                cancel_event=cancel_event,
            )
            acquire = getattr(backend, "acquire", None)
            if acquire is not None:
                await acquire()
            sequence = self.execute_sequence(self.plan(url, options), context)
            if options.session_timeout_ms:
                try:
                    await asyncio.wait_for(sequence, timeout=options.session_timeout_ms / 1000)
                except asyncio.TimeoutError as exc:
                    raise SessionDeadlineExceeded(options.session_timeout_ms) from exc
            else:
                await sequence

            result = aggregate_result(context, self.extractor, utc_now())
            if result.success:
                self.store.update_metadata(
                    session_id,
                    {
                        "title": result.title,
                        "author": result.author,
                        "publish_time": result.publish_time,
                    },
                )
                logger.info("Session %s extracted %r by %s", session_id, result.title, result.author)
            else:
                self._record_error(session_id, result.error or NO_USABLE_CONTENT, "aggregate", False)
            success = result.success
            return result
        except SessionDeadlineExceeded as exc:
            message = str(exc)
            logger.error("Session %s: %s", session_id, message)
            self._record_error(session_id, message, self._step_of(context), False)
            return self._error_result(url, session_id, message, started)
        except (StepFailedError, SessionCancelled) as exc:
            logger.warning("Session %s aborted: %s", session_id, exc)
            self._record_error(session_id, str(exc), self._step_of(context), False)
            return self._error_result(url, session_id, str(exc), started)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error in session %s", session_id)
            message = str(exc) or exc.__class__.__name__
            self._record_error(session_id, message, "orchestrator", False)
            return self._error_result(url, session_id, message, started)
        finally:
            self.store.complete_session(session_id, success)
            self._cancel_events.pop(session_id, None)
            if backend is not None:
                try:
                    await backend.close()
                except Exception:  # pylint: disable=broad-except
                    logger.warning("Failed to close backend for session %s", session_id, exc_info=True)

    async def execute_sequence(self, steps: Sequence[Step], context: CrawlContext) -> Plan:
        """Walk the plan in order, re-planning the tail after each step.

        Returns the plan as it stood when the walk finished.
        """
        plan: Plan = tuple(steps)
        index = 0
        while index < len(plan):
            step = plan[index]
            context.raise_if_cancelled()
            await self.execute_with_retry(step, context)

            remaining = self.replan(step, context, plan[index + 1 :])
            if remaining is not None:
                plan = plan[: index + 1] + remaining
                logger.info(
                    "Session %s re-planned after %s; %d step(s) remain",
                    context.session_id,
                    step.name,
                    len(remaining),
                )

            if index < len(plan) - 1:
                await self._pause(context.options.delay_between_steps_ms, context)
            index += 1
        return plan

    async def execute_with_retry(self, step: Step, context: CrawlContext) -> StepResult:
        max_attempts = context.options.retry_attempts if step.retryable else 1
        result: Optional[StepResult] = None
        for attempt in range(1, max_attempts + 1):
            context.raise_if_cancelled()
            context.current_step = step.name
            self.store.update_current_step(context.session_id, step.name)
            logger.debug("Running %s (attempt %d/%d)", step.name, attempt, max_attempts)

            result = await step.safe_execute(context)
            context.step_results[step.name] = result
            self.store.update_step_result(context.session_id, step.name, result)
            if result.success:
                return result

            logger.warning(
                "Step %s failed (attempt %d/%d): %s",
                step.name,
                attempt,
                max_attempts,
                result.error,
            )
            if attempt < max_attempts:
                await self._pause(attempt * context.options.retry_base_delay_ms, context)

        assert result is not None
        message = result.error or f"step {step.name} failed"
        if not step.retryable:
            raise StepFailedError(step.name, message)

        logger.warning("Skipping %s after %d failed attempt(s)", step.name, max_attempts)
        self._record_error(
            context.session_id,
            f"Step {step.name} failed after {max_attempts} attempt(s): {message}",
            step.name,
            True,
        )
        return result

    def replan(self, completed: Step, context: CrawlContext, remaining: Plan) -> Optional[Plan]:
        """Apply every re-planning rule in turn; ``None`` means no change."""
        changed = False
        for name, rule in self.rules:
            updated = rule(completed, context, remaining)
            if updated is not None and updated != remaining:
                dropped = [step.name for step in remaining if step not in updated]
                logger.debug("Rule %s dropped %s", name, dropped)
                remaining = updated
                changed = True
        return remaining if changed else None

    def cancel(self, session_id: str) -> bool:
        """Ask a running session to stop at its next suspension point."""
        event = self._cancel_events.get(session_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        return self.store.get_status(session_id)

    def list_statuses(self) -> List[SessionStatus]:
        return self.store.list_statuses()

    def close(self) -> None:
        for event in self._cancel_events.values():
            event.set()
        self.store.destroy()

    async def _pause(self, delay_ms: int, context: CrawlContext) -> None:
        if delay_ms > 0:
            try:
                await asyncio.wait_for(context.cancel_event.wait(), timeout=delay_ms / 1000)
            except asyncio.TimeoutError:
                return
        context.raise_if_cancelled()

    def _record_error(self, session_id: str, message: str, step_name: str, retryable: bool) -> None:
        self.store.add_error(
            session_id,
            ErrorRecord(
                message=message,
                step_name=step_name,
                session_id=session_id,
                retryable=retryable,
                timestamp=utc_now(),
            ),
        )

    @staticmethod
    def _step_of(context: Optional[CrawlContext]) -> str:
        if context is None or not context.current_step:
            return "orchestrator"
        return context.current_step

    @staticmethod
    def _error_result(url: str, session_id: str, message: str, started: dt.datetime) -> CrawlResult:
        finished = utc_now()
        return CrawlResult(
            success=False,
            url=url,
            crawl_time=finished,
            duration_ms=elapsed_ms(started, finished),
            session_id=session_id,
            error=message,
        )
