"""Batch orchestrator - drives a dataset job to its target count.

Runs the prompt pipeline one chunk at a time:

    IDLE -> REQUESTING_PROMPTS -> RECONCILING_PROMPTS -> SYNTHESIZING_MEDIA
         -> RETRYING_FAILURES -> IDLE  (loop)

until ``generated_count`` reaches the target, the caller cancels, or a
batch-level failure ends the run in FAILED. Media synthesis fans out across the
batch with asyncio.gather; everything else runs strictly in sequence on one
event loop, so session state is only touched between awaits.

Usage:
    orchestrator = BatchOrchestrator(backend, session, settings=OrchestratorSettings.from_config(config))
    report = await orchestrator.run(total_target=50, synthesize=True)
    print(report.summary())

Author:
    PromptForge Contributors
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .backends.base import GenerationBackend
from .directives import DirectiveRequest, assemble_directive
from .errors import (
    AuthenticationError,
    CollaboratorTimeout,
    EmptyBatchError,
    InvalidTransition,
    PromptForgeError,
    classify_error,
    describe_error,
)
from .manifest import generate_manifest, next_batch_size
from .media import MediaRequest, MediaResult
from .models import TASK_PRODUCT, PromptItem
from .reconcile import reconcile
from .session import Session

__author__ = 'PromptForge Contributors'
__all__ = [
    'BatchState',
    'TRANSITIONS',
    'OrchestratorSettings',
    'RetryLedger',
    'BatchOutcome',
    'BatchReport',
    'BatchOrchestrator',
]

logger = logging.getLogger('promptforge.orchestrator')


class BatchState(Enum):
    IDLE = 'idle'
    REQUESTING_PROMPTS = 'requesting_prompts'
    RECONCILING_PROMPTS = 'reconciling_prompts'
    SYNTHESIZING_MEDIA = 'synthesizing_media'
    RETRYING_FAILURES = 'retrying_failures'
    COMPLETE = 'complete'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


TERMINAL_STATES = frozenset({BatchState.COMPLETE, BatchState.CANCELLED, BatchState.FAILED})

TRANSITIONS: dict[BatchState, frozenset[BatchState]] = {
    BatchState.IDLE: frozenset({
        BatchState.REQUESTING_PROMPTS, BatchState.COMPLETE, BatchState.CANCELLED, BatchState.FAILED,
    }),
    BatchState.REQUESTING_PROMPTS: frozenset({BatchState.RECONCILING_PROMPTS, BatchState.FAILED}),
    BatchState.RECONCILING_PROMPTS: frozenset({
        BatchState.SYNTHESIZING_MEDIA, BatchState.IDLE, BatchState.FAILED,
    }),
    BatchState.SYNTHESIZING_MEDIA: frozenset({
        BatchState.RETRYING_FAILURES, BatchState.IDLE, BatchState.FAILED,
    }),
    BatchState.RETRYING_FAILURES: frozenset({BatchState.IDLE, BatchState.FAILED}),
    BatchState.COMPLETE: frozenset(),
    BatchState.CANCELLED: frozenset(),
    BatchState.FAILED: frozenset(),
}


@dataclass
class OrchestratorSettings:
    """Tunables for a run (all timeouts in seconds)."""
    chunk_size: int = 10
    window_items: int = 25
    window_chars: int = 80
    prompt_timeout: float = 120.0
    media_timeout: float = 90.0
    sanitize_timeout: float = 60.0
    analysis_timeout: float = 120.0
    aspect_ratio: str = '1:1'
    resolution: str = '2k'

    @classmethod
    def from_config(cls, config: dict) -> 'OrchestratorSettings':
        generation = config.get('generation') or {}
        repetition = config.get('repetition') or {}
        timeouts = config.get('timeouts') or {}
        media = config.get('media') or {}
        return cls(
            chunk_size=int(generation.get('chunk_size', cls.chunk_size)),
            window_items=int(repetition.get('window_items', cls.window_items)),
            window_chars=int(repetition.get('window_chars', cls.window_chars)),
            prompt_timeout=float(timeouts.get('prompts', cls.prompt_timeout)),
            media_timeout=float(timeouts.get('media', cls.media_timeout)),
            sanitize_timeout=float(timeouts.get('sanitize', cls.sanitize_timeout)),
            analysis_timeout=float(timeouts.get('analysis', cls.analysis_timeout)),
            aspect_ratio=str(media.get('aspect_ratio', cls.aspect_ratio)),
            resolution=str(media.get('resolution', cls.resolution)).lower(),
        )


class RetryLedger:
    """Retry/give-up accounting for per-item media synthesis.

    Every item gets one first attempt and at most one retry. A failure on the
    first attempt queues the item; a failure on the retry is permanent.
    """

    def __init__(self):
        self.results: dict[str, MediaResult] = {}
        self.permanent_failures: dict[str, str] = {}
        self._pending: list[str] = []
        self._retried: set[str] = set()

    def record(self, item_id: str, result: MediaResult) -> None:
        self.results[item_id] = result
        if result.ok:
            self.permanent_failures.pop(item_id, None)
        elif item_id in self._retried:
            self.permanent_failures[item_id] = result.error or 'unknown error'
        elif item_id not in self._pending:
            self._pending.append(item_id)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def take_retry_queue(self) -> list[str]:
        """Hand out queued items for their single retry."""
        queue, self._pending = self._pending, []
        self._retried.update(queue)
        return queue

    @property
    def retried_count(self) -> int:
        return len(self._retried)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results.values() if r.ok)


@dataclass
class BatchOutcome:
    """What one loop iteration produced."""
    batch_number: int
    start_count: int
    requested: int
    produced: int
    unparsed: int
    shortfall: int
    media_succeeded: int = 0
    media_retried: int = 0
    media_failed: int = 0


@dataclass
class BatchReport:
    """Aggregate result of a run."""
    total_target: int
    state: BatchState = BatchState.IDLE
    generated_count: int = 0
    batches: list[BatchOutcome] = field(default_factory=list)
    media: dict[str, MediaResult] = field(default_factory=dict)
    error: Optional[str] = None
    auth_error: bool = False

    @property
    def unparsed_count(self) -> int:
        return sum(b.unparsed for b in self.batches)

    @property
    def media_failures(self) -> int:
        return sum(b.media_failed for b in self.batches)

    @property
    def completed(self) -> bool:
        return self.state == BatchState.COMPLETE

    def summary(self) -> str:
        line = (f'{self.state.value}: {self.generated_count}/{self.total_target} prompts '
                f'in {len(self.batches)} batch(es)')
        if self.unparsed_count:
            line += f', {self.unparsed_count} unparsed'
        if self.media:
            line += f', media {len(self.media) - self.media_failures} ok / {self.media_failures} failed'
        if self.error:
            line += f' - {self.error}'
        return line


class BatchOrchestrator:
    """Owns the run loop and all mutable run state."""

    def __init__(self, backend: GenerationBackend, session: Session, settings: Optional[OrchestratorSettings] = None):
        self.backend = backend
        self.session = session
        self.settings = settings or OrchestratorSettings()
        self.state = BatchState.IDLE
        self.transitions: list[tuple[BatchState, BatchState]] = []

    # ========================================================================
    # State Machine
    # ========================================================================

    def _transition(self, new_state: BatchState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f'{self.state.value} -> {new_state.value}')
        logger.debug(f'State: {self.state.value} -> {new_state.value}')
        self.transitions.append((self.state, new_state))
        self.state = new_state

    def _fail(self, report: BatchReport, error: BaseException) -> BatchReport:
        report.error = describe_error(error)
        report.auth_error = isinstance(error, AuthenticationError)
        self._transition(BatchState.FAILED)
        report.state = self.state
        logger.error(f'Run failed: {error}')
        return report

    # ========================================================================
    # Collaborator Calls
    # ========================================================================

    async def _call(self, awaitable: Awaitable, timeout: float, context: str) -> Any:
        """Await a collaborator call under a timeout, mapping errors to the taxonomy."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeout(f'{context} timed out after {timeout:g}s') from e
        except PromptForgeError:
            raise
        except Exception as e:
            raise classify_error(e, context) from e

    async def analyze_subject(self) -> None:
        """Run subject analysis on the session's reference images and adopt the result."""
        if not self.session.subject_images:
            raise ValueError('Please upload at least one subject image to analyze.')
        payload = await self._call(
            self.backend.analyze_subject(self.session.headshot, self.session.bodyshot),
            self.settings.analysis_timeout,
            'subject analysis',
        )
        identity = self.session.apply_analysis(payload)
        logger.info(f'Analyzed subject: {identity.name}')

    def _media_references(self) -> list[str]:
        if self.session.task_type == TASK_PRODUCT:
            return [img for img in self.session.product_images if img]
        return self.session.subject_images

    async def _synthesize_one(self, item_id: str, prompt: str) -> MediaResult:
        """One media call. Never raises: every failure becomes a failed result."""
        try:
            request = MediaRequest(
                prompt=prompt,
                aspect_ratio=self.settings.aspect_ratio,
                resolution=self.settings.resolution,
                reference_images=self._media_references(),
                item_id=item_id,
            )
            result = await self._call(
                self.backend.synthesize_media(request), self.settings.media_timeout, 'media synthesis')
        except (PromptForgeError, ValueError) as e:
            logger.warning(f'Media synthesis failed for {item_id}: {e}')
            return MediaResult.failure(str(e), item_id)
        return replace(result, item_id=item_id)

    async def _sanitize(self, prompt: str) -> str:
        """Best-effort rewrite; the original text is kept if the sanitizer fails."""
        try:
            return await self._call(self.backend.sanitize(prompt), self.settings.sanitize_timeout, 'sanitize')
        except AuthenticationError:
            raise
        except PromptForgeError as e:
            logger.warning(f'Sanitizer unavailable, retrying with original text: {e}')
            return prompt

    async def _sanitize_and_retry(self, item_id: str, prompt: str) -> MediaResult:
        return await self._synthesize_one(item_id, await self._sanitize(prompt))

    # ========================================================================
    # Run Loop
    # ========================================================================

    async def _synthesize_batch(self, items: list[PromptItem], outcome: BatchOutcome, report: BatchReport) -> None:
        self._transition(BatchState.SYNTHESIZING_MEDIA)
        prompts = {item.id: item.final_prompt for item in items}
        ledger = RetryLedger()

        results = await asyncio.gather(*(self._synthesize_one(i, p) for i, p in prompts.items()))
        for item_id, result in zip(prompts, results):
            ledger.record(item_id, result)

        if ledger.has_pending:
            self._transition(BatchState.RETRYING_FAILURES)
            queue = ledger.take_retry_queue()
            logger.info(f'Retrying {len(queue)} failed item(s) with sanitized prompts')
            retried = await asyncio.gather(*(self._sanitize_and_retry(i, prompts[i]) for i in queue))
            for item_id, result in zip(queue, retried):
                ledger.record(item_id, result)

        outcome.media_succeeded = ledger.succeeded
        outcome.media_retried = ledger.retried_count
        outcome.media_failed = len(ledger.permanent_failures)
        report.media.update(ledger.results)
        if ledger.permanent_failures:
            logger.warning(f'{len(ledger.permanent_failures)} item(s) failed media synthesis after retry')

    async def _run_batch(self, batch_number: int, count: int, total_target: int, synthesize: bool,
                         report: BatchReport) -> BatchOutcome:
        session = self.session
        start_count = session.generated_count
        slots = generate_manifest(session.task_type, total_target, start_count, count)

        self._transition(BatchState.REQUESTING_PROMPTS)
        directive = assemble_directive(DirectiveRequest(
            slots=slots,
            task_type=session.task_type,
            identity=session.identity,
            safety_mode=session.safety_mode,
            ugc_settings=session.ugc_settings,
            product_images=[img for img in session.product_images if img],
            subject_images=session.subject_images,
            avoid_settings=session.repetition.window(self.settings.window_items, self.settings.window_chars),
        ))
        logger.info(f'Batch {batch_number}: requesting items {start_count + 1}-{start_count + count} of {total_target}')
        raw_items = await self._call(
            self.backend.generate_prompts(directive), self.settings.prompt_timeout, 'prompt generation')

        self._transition(BatchState.RECONCILING_PROMPTS)
        result = reconcile(raw_items, slots)
        # Items past the manifest have no slot and never count toward the target.
        kept = result.items[:len(slots)]
        if not any(item.text.strip() for item in kept):
            raise EmptyBatchError('No prompts generated by the AI.')

        session.repetition.record(result.settings)
        session.add_prompts(kept)
        outcome = BatchOutcome(
            batch_number=batch_number,
            start_count=start_count,
            requested=count,
            produced=len(kept),
            unparsed=result.unparsed_count,
            shortfall=result.shortfall,
        )

        if synthesize:
            await self._synthesize_batch(kept, outcome, report)

        self._transition(BatchState.IDLE)
        return outcome

    async def run(
        self,
        total_target: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        synthesize: bool = False,
        on_batch: Optional[Callable[[BatchOutcome], None]] = None,
    ) -> BatchReport:
        """Generate prompts (and optionally media) until the target is reached.

        Args:
            total_target: Dataset size (defaults to the session target).
            cancel_event: Checked at the top of every pass; in-flight calls finish.
            synthesize: Run per-item media synthesis after each batch.
            on_batch: Called with each BatchOutcome for incremental feedback.

        Returns:
            BatchReport in a terminal state (COMPLETE, CANCELLED or FAILED).
        """
        if self.state in TERMINAL_STATES:
            self.state = BatchState.IDLE
            self.transitions = []
        elif self.state != BatchState.IDLE:
            raise InvalidTransition(f'Run already in progress ({self.state.value})')

        total = total_target or self.session.target_total
        report = BatchReport(total_target=total, generated_count=self.session.generated_count)

        try:
            self.session.validate_ready()
        except PromptForgeError as e:
            return self._fail(report, e)

        batch_number = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.info('Run cancelled')
                self._transition(BatchState.CANCELLED)
                break

            count = next_batch_size(total, self.session.generated_count, self.settings.chunk_size)
            if count <= 0:
                self._transition(BatchState.COMPLETE)
                break

            batch_number += 1
            try:
                outcome = await self._run_batch(batch_number, count, total, synthesize, report)
            except (PromptForgeError, ValueError) as e:
                report.generated_count = self.session.generated_count
                return self._fail(report, e)

            report.batches.append(outcome)
            report.generated_count = self.session.generated_count
            if on_batch is not None:
                on_batch(outcome)

        report.state = self.state
        logger.info(report.summary())
        return report
