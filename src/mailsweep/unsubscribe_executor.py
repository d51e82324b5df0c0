"""Carries out stored unsubscribe tasks over HTTP."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

import httpx
from pydantic import BaseModel

from mailsweep.models import UnsubscribeMethod, UnsubscribeTask

if TYPE_CHECKING:
    from mailsweep.llm_client import LLMClient
    from mailsweep.storage import Storage
    from mailsweep.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

SUCCESS_INDICATORS = (
    "unsubscribed",
    "successfully removed",
    "been removed",
    "no longer receive",
    "subscription cancelled",
    "subscription canceled",
    "opt-out successful",
    "removed from",
    "preferences updated",
)

USER_AGENT = "Mozilla/5.0 (compatible; mailsweep/1.0)"


class UnsubscribeResult(BaseModel):
    """Outcome of one unsubscribe attempt."""

    success: bool
    method: UnsubscribeMethod
    status_code: int | None = None
    explanation: str
    next_action: str | None = None
    raw_response: str | None = None


class UnsubscribeExecutor:
    """Executes one-click (RFC 8058) and link unsubscribes.

    A response that plainly says the address was removed counts as success.
    Anything less clear is handed to the LLM for a verdict. Mailto tasks are
    reported back as manual work.
    """

    def __init__(
        self,
        llm: LLMClient,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.llm = llm
        self.delay = delay
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> UnsubscribeExecutor:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def pause(self) -> None:
        """Wait between consecutive unsubscribe requests."""
        self._sleep(self.delay)

    def execute(self, url: str, method: UnsubscribeMethod) -> UnsubscribeResult:
        if method is UnsubscribeMethod.MAILTO:
            return UnsubscribeResult(
                success=False,
                method=method,
                explanation="Mailto unsubscribe requires sending an email",
                next_action=f"Send email to: {url.removeprefix('mailto:')}",
            )
        if method is UnsubscribeMethod.NONE:
            return UnsubscribeResult(
                success=False, method=method, explanation="No unsubscribe action available"
            )

        try:
            if method is UnsubscribeMethod.ONE_CLICK:
                response = self._client.post(
                    url,
                    content="List-Unsubscribe=One-Click-Unsubscribe",
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            else:
                response = self._client.get(url)
        except httpx.HTTPError as e:
            logger.warning(f"Unsubscribe request to {url} failed: {e}")
            analysis = self.llm.analyze_unsubscribe_response(url, 0, "", str(e))
            return UnsubscribeResult(
                success=False,
                method=method,
                explanation=analysis.explanation or f"Request failed: {e}",
                next_action=analysis.next_action or "Try manually visiting the unsubscribe link",
            )

        body = response.text
        if response.is_success:
            lower_body = body.lower()
            if any(indicator in lower_body for indicator in SUCCESS_INDICATORS):
                return UnsubscribeResult(
                    success=True,
                    method=method,
                    status_code=response.status_code,
                    explanation="Unsubscribe appears successful based on response content",
                    raw_response=body[:500],
                )
            analysis = self.llm.analyze_unsubscribe_response(url, response.status_code, body)
        else:
            analysis = self.llm.analyze_unsubscribe_response(
                url,
                response.status_code,
                body,
                f"HTTP {response.status_code} {response.reason_phrase}",
            )

        return UnsubscribeResult(
            success=analysis.success,
            method=method,
            status_code=response.status_code,
            explanation=analysis.explanation,
            next_action=analysis.next_action,
            raw_response=body[:500],
        )

    def execute_batch(self, tasks: list[UnsubscribeTask]) -> dict[int, UnsubscribeResult]:
        """Execute tasks one after another, pausing ``delay`` seconds between requests."""
        results: dict[int, UnsubscribeResult] = {}
        for task in tasks:
            if results:
                self.pause()
            results[task.id] = self.execute(task.unsubscribe_url, task.method)
        return results


def run_unsubscribe_task(
    storage: Storage,
    executor: UnsubscribeExecutor,
    task: UnsubscribeTask,
    audit: StructuredLogger | None = None,
) -> UnsubscribeResult:
    """Execute one stored task and record its outcome."""
    result = executor.execute(task.unsubscribe_url, task.method)
    storage.finish_unsubscribe_task(task.id, result.success, result.model_dump(mode="json"))
    logger.info(
        f"Unsubscribe from {task.sender} via {task.method.value}: "
        f"{'ok' if result.success else 'failed'} ({result.explanation})"
    )
    if audit:
        audit.log_unsubscribe(
            task_id=task.id,
            url=task.unsubscribe_url,
            method=task.method.value,
            success=result.success,
            explanation=result.explanation,
        )
    return result


def run_pending_unsubscribes(
    storage: Storage,
    executor: UnsubscribeExecutor,
    audit: StructuredLogger | None = None,
) -> list[tuple[UnsubscribeTask, UnsubscribeResult]]:
    """Execute every pending task, pausing between requests."""
    outcomes = []
    for i, task in enumerate(storage.pending_unsubscribe_tasks()):
        if i:
            executor.pause()
        outcomes.append((task, run_unsubscribe_task(storage, executor, task, audit)))
    return outcomes
