"""Generation lifecycle: validate, submit, poll, finish.

One ``GenerationOrchestrator`` drives one generation at a time::

    idle -> validating -> submitting -> polling | awaiting_response
         -> completed | failed

Every transition is pushed to the ``render`` callback. Starting a new
generation (or calling ``reset``) moves to a new epoch; status responses
that arrive for an older epoch are dropped. Nothing is cancelled on the
remote side.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from i2v_client.client import I2VClient
from i2v_client.config import PollingSettings
from i2v_client.credentials import CredentialStore
from i2v_client.errors import (
    GenerationError,
    MalformedResponseError,
    PollingTimeoutError,
    ServiceError,
    ValidationError,
)
from i2v_client.models import (
    DurationUnit,
    GenerationRequest,
    GenerationTask,
    ModelVariant,
    TaskStatus,
)
from i2v_client.urls import normalize_source_url

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    AWAITING_RESPONSE = "awaiting_response"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.FAILED)


@dataclass
class GenerationParams:
    """Raw user input for one generation, before validation."""
    image_url: str | None
    prompt: str = ""
    negative_prompt: str = ""
    duration: int = 5
    duration_unit: str = "seconds"
    variant: str = "standard"
    extend_prompt: bool = True
    count: int = 1
    end_image_url: str | None = None
    name: str | None = None


@dataclass
class GenerationState:
    """Externally observable snapshot of the orchestrator."""
    phase: Phase = Phase.IDLE
    message: str = ""
    epoch: int = 0
    request: GenerationRequest | None = None
    task: GenerationTask | None = None
    error: GenerationError | None = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def result_url(self) -> str | None:
        if self.phase is Phase.COMPLETED and self.task is not None:
            return self.task.result_url
        return None


RenderCallback = Callable[[GenerationState], None]


class GenerationOrchestrator:
    """Drives a generation request from submission to a terminal state.

    Args:
        client: HTTP client for the remote service.
        credentials: Store the access token is read from at submit time.
        polling: Poll interval and ceiling.
        render: Called with a state snapshot on every transition.
    """

    def __init__(
        self,
        client: I2VClient,
        credentials: CredentialStore,
        polling: PollingSettings | None = None,
        render: RenderCallback | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._polling = polling or PollingSettings()
        self._render = render

        self._state = GenerationState()
        self._epoch = 0
        self._api_key: str | None = None
        self._started_at = 0.0
        self._timer: asyncio.TimerHandle | None = None
        self._schedule_seq = 0
        self._check_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self._done = asyncio.Event()

    @property
    def state(self) -> GenerationState:
        return replace(self._state)

    @property
    def epoch(self) -> int:
        return self._epoch

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _transition(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        logger.debug("[epoch %d] %s: %s", self._epoch, self._state.phase.value, self._state.message)
        if self._state.is_terminal:
            self._done.set()
        if self._render is not None:
            self._render(replace(self._state))

    def _fail(self, exc: GenerationError, task: GenerationTask | None = None) -> None:
        logger.error("Generation failed: %s", exc)
        changes = {"phase": Phase.FAILED, "message": str(exc), "error": exc}
        if task is not None:
            changes["task"] = task
        self._transition(**changes)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Abandon the current generation and return to idle.

        In-flight requests are not aborted; their responses are ignored.
        """
        self._cancel_timer()
        self._schedule_seq += 1
        self._epoch += 1
        self._api_key = None
        # wake anyone waiting on the abandoned generation
        self._done.set()
        self._done = asyncio.Event()
        self._state = GenerationState(epoch=self._epoch)
        if self._render is not None:
            self._render(replace(self._state))

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _validate(self, params: GenerationParams) -> tuple[str, GenerationRequest]:
        api_key = self._credentials.get()
        if not api_key:
            raise ValidationError("Please provide API token")

        image_url = (params.image_url or "").strip()
        if not image_url:
            raise ValidationError("Please provide image URL")

        try:
            variant = ModelVariant(params.variant)
        except ValueError:
            raise ValidationError(f"Unknown model variant: {params.variant!r}") from None

        prompt = params.prompt or ""
        if variant.requires_prompt and not prompt.strip():
            raise ValidationError(f"A prompt is required for the {variant.value} model")

        end_image_url = None
        if variant.requires_end_image:
            end_image_url = (params.end_image_url or "").strip()
            if not end_image_url:
                raise ValidationError("Please provide end image URL")
            end_image_url = normalize_source_url(end_image_url)

        try:
            unit = DurationUnit(params.duration_unit)
        except ValueError:
            raise ValidationError(f"Unknown duration unit: {params.duration_unit!r}") from None
        if params.duration not in unit.allowed:
            allowed = ", ".join(str(v) for v in unit.allowed)
            raise ValidationError(
                f"Invalid duration {params.duration} {unit.value}; expected one of {allowed}"
            )

        request = GenerationRequest(
            source_image_url=normalize_source_url(image_url),
            prompt=prompt,
            negative_prompt=params.negative_prompt or "",
            duration=params.duration,
            duration_unit=unit,
            model_variant=variant,
            extend_prompt=params.extend_prompt,
            replicate_count=params.count,
            end_image_url=end_image_url,
            name=params.name or "",
        )
        return api_key, request

    async def submit(self, params: GenerationParams) -> GenerationState:
        """Start a new generation, abandoning whatever was running.

        Returns the state once submission has settled: ``polling``, or a
        terminal state for validation/submission failures and single-call
        acknowledgments.
        """
        self.reset()
        epoch = self._epoch

        self._transition(phase=Phase.VALIDATING, message="Preparing request...")
        try:
            api_key, request = self._validate(params)
        except ValidationError as exc:
            self._fail(exc)
            return self.state

        self._api_key = api_key
        self._transition(
            phase=Phase.SUBMITTING, message="Sending request...", request=request,
        )
        try:
            result = await self._client.submit(request, api_key)
        except GenerationError as exc:
            if epoch == self._epoch:
                self._fail(exc)
            return self.state

        if epoch != self._epoch:
            logger.warning("Discarding submission response for superseded request %s", request.name)
            return self.state

        if self._client.api.response_mode == "single":
            self._transition(
                phase=Phase.AWAITING_RESPONSE,
                message="Reading acknowledgment...",
                task=result.task,
            )
            if result.task is not None and result.task.status is TaskStatus.FAILED:
                reason = result.task.failure_reason or "Video generation failed"
                self._fail(ServiceError(reason), task=result.task)
                return self.state
            self._transition(
                phase=Phase.COMPLETED,
                message="Video generation started successfully",
                task=result.task,
            )
            return self.state

        task = result.task or GenerationTask(id=result.task_id, status=TaskStatus.QUEUED)
        self._started_at = asyncio.get_running_loop().time()
        if task.is_done:
            self._apply_task(task)
            return self.state

        self._transition(
            phase=Phase.POLLING,
            message=f"Task {task.id or '(pending id)'} submitted; "
                    f"checking status in {self._polling.interval:g}s",
            task=task,
        )
        self._schedule_check()
        return self.state

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _schedule_check(self) -> None:
        self._cancel_timer()
        self._schedule_seq += 1
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self._polling.interval, self._fire_check, self._epoch, self._schedule_seq,
        )

    def _fire_check(self, epoch: int, seq: int) -> None:
        self._timer = None
        task = asyncio.create_task(self._run_check(epoch, seq))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def check_now(self) -> GenerationState:
        """Query the task status immediately, replacing the pending scheduled check."""
        if self._state.phase is not Phase.POLLING:
            return self.state
        self._cancel_timer()
        self._schedule_seq += 1
        await self._run_check(self._epoch, None)
        return self.state

    async def _run_check(self, epoch: int, seq: int | None) -> None:
        # one outstanding status query at a time
        async with self._check_lock:
            if epoch != self._epoch or self._state.phase is not Phase.POLLING:
                return
            if seq is not None and seq != self._schedule_seq:
                logger.debug("Skipping superseded scheduled check")
                return

            task_id = self._state.task.id if self._state.task else None
            try:
                task = await self._client.fetch_task(task_id, self._api_key or "")
            except GenerationError as exc:
                if epoch != self._epoch:
                    logger.warning("Discarding stale status error for task %s: %s", task_id, exc)
                    return
                self._fail(exc)
                return
            except Exception as exc:
                if epoch != self._epoch:
                    return
                logger.exception("Could not decode status for task %s", task_id)
                self._fail(MalformedResponseError(f"Could not read task status: {exc}"))
                return

            if epoch != self._epoch:
                logger.warning("Discarding stale status for task %s", task_id)
                return
            self._apply_task(task)

    def _ceiling_reached(self, attempts: int) -> str | None:
        max_attempts = self._polling.max_attempts
        if max_attempts and attempts >= max_attempts:
            return f"{attempts} status checks"
        max_wait = self._polling.max_wait
        if max_wait:
            elapsed = asyncio.get_running_loop().time() - self._started_at
            if elapsed >= max_wait:
                return f"{elapsed:.0f}s"
        return None

    def _apply_task(self, task: GenerationTask) -> None:
        attempts = self._state.attempts + 1
        logger.debug("Task %s: status=%s (check %d)", task.id, task.status.value, attempts)

        if task.status is TaskStatus.COMPLETED:
            logger.info("Task %s completed: %s", task.id, task.result_url)
            self._transition(
                phase=Phase.COMPLETED,
                message=f"Video ready: {task.result_url or '(no URL returned)'}",
                task=task,
                attempts=attempts,
                error=None,
            )
            return

        if task.status is TaskStatus.FAILED:
            reason = task.failure_reason or "Video generation failed"
            self._state = replace(self._state, attempts=attempts)
            self._fail(ServiceError(reason), task=task)
            return

        exceeded = self._ceiling_reached(attempts)
        if exceeded:
            self._state = replace(self._state, attempts=attempts)
            self._fail(
                PollingTimeoutError(
                    f"Task {task.id} still {task.status.value} after {exceeded}; giving up"
                ),
                task=task,
            )
            return

        self._transition(
            phase=Phase.POLLING,
            message=f"Task {task.id} {task.status.value}; "
                    f"checking again in {self._polling.interval:g}s",
            task=task,
            attempts=attempts,
        )
        self._schedule_check()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait(self, timeout: float | None = None) -> GenerationState:
        """Wait until the current generation reaches a terminal state.

        Returns early with the current state if the generation is reset.
        """
        if self._state.phase is Phase.IDLE or self._state.is_terminal:
            return self.state
        await asyncio.wait_for(self._done.wait(), timeout)
        return self.state

    async def close(self) -> None:
        """Stop scheduled and outstanding status checks."""
        self._cancel_timer()
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
