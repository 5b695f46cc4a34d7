"""Background worker that turns completed runs into memories."""

import asyncio
import logging
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from mnemon.config import MnemonConfig, load_config
from mnemon.exceptions import ConfigurationError
from mnemon.memory.db import Database
from mnemon.memory.embeddings import EmbeddingProvider
from mnemon.memory.queue import PassiveMemoryQueue
from mnemon.memory.schema import InferenceCall, QueueEntry
from mnemon.memory.store import MemoryStore
from mnemon.models import ModelUsage, merge_usages
from mnemon.passive.apply import DEDUPE_THRESHOLD, MIN_CONFIDENCE, apply_candidates
from mnemon.passive.extraction import CompleteFn, extract_candidates
from mnemon.passive.reconcile import ReconcileResult, reconcile_candidates
from mnemon.passive.transcript import build_transcript, clamp_chars_for_token_budget

logger = logging.getLogger(__name__)

EXTRACT_TURN_BASE = 9000
REFINE_TURN_BASE = 9100


def retry_delay_seconds(attempt: int) -> int:
    """Linear backoff of 20s per attempt, clamped to 10-300s."""
    return min(300, max(10, attempt * 20))


def is_retryable(entry: QueueEntry, error: BaseException) -> bool:
    """Configuration errors are terminal; anything else retries while attempts remain."""
    if isinstance(error, ConfigurationError):
        return False
    return entry.attempt_count < entry.max_attempts


class PassiveMemoryWorker:
    """Polls the passive memory queue and processes one job per tick.

    Only one tick runs at a time within a worker. Across processes, the queue's
    leased claim keeps two workers off the same row.
    """

    def __init__(
        self,
        store: MemoryStore,
        queue: PassiveMemoryQueue,
        config: MnemonConfig,
        embeddings: Optional[EmbeddingProvider] = None,
        complete: Optional[CompleteFn] = None,
        clock: Optional[Callable[[], datetime]] = None,
        process_fn: Optional[Callable[[], Awaitable[Any]]] = None,
        worker_id: Optional[str] = None,
    ):
        """Initialize worker.

        Args:
            store: Memory repository
            queue: Passive memory queue
            config: Subsystem configuration (agents and worker tuning)
            embeddings: Embedding provider (best-effort)
            complete: LLM call used for extraction and reconciliation
            clock: Source of the current time, defaults to the database clock
            process_fn: Work done per tick, defaults to :meth:`process_next`
            worker_id: Lease owner name, defaults to ``passive-memory-worker:<pid>``
        """
        self.store = store
        self.queue = queue
        self.config = config
        self.embeddings = embeddings
        self.complete = complete
        self.clock = clock or store.db.now
        self.process_fn = process_fn or self.process_next
        self.worker_id = worker_id or f"passive-memory-worker:{os.getpid()}"
        self.tick_seconds = config.worker.tick_seconds

        self._started = False
        self._running = False
        self._draining = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    # Lifecycle

    def ensure_start(self) -> None:
        """Start the polling loop if it isn't running. Safe to call repeatedly."""
        if self._started:
            return
        self._started = True
        self._draining = False
        self._loop_task = asyncio.create_task(self._main_loop())
        logger.info("Passive memory worker %s started (tick %.1fs)", self.worker_id, self.tick_seconds)

    async def stop(self) -> None:
        """Stop polling and wait for an in-flight tick to finish."""
        self._draining = True
        self._wakeup.set()

        if self._running:
            logger.info("Waiting for in-flight passive memory job to finish...")
        await self._idle.wait()

        if self._loop_task is not None:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        self._started = False
        logger.info("Passive memory worker %s stopped", self.worker_id)

    def is_busy(self) -> bool:
        return self._running

    def notify(self) -> None:
        """Wake the loop early, e.g. right after a job was enqueued."""
        self._wakeup.set()

    async def _main_loop(self):
        while not self._draining:
            await self.tick()
            if self._draining:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def tick(self) -> bool:
        """Run one unit of work unless another tick is in flight or the worker is draining.

        Returns:
            True if the tick ran
        """
        if self._running or self._draining:
            return False

        self._running = True
        self._idle.clear()
        try:
            await self.process_fn()
        except Exception as e:
            logger.warning("Passive memory tick failed: %s", e, exc_info=True)
        finally:
            self._running = False
            self._idle.set()
        return True

    # Processing

    async def process_next(self) -> Optional[QueueEntry]:
        """Claim and process the next eligible job.

        Returns:
            The job's row after its terminal transition, or None when nothing was claimed
        """
        if not await self.store.get_processing_enabled():
            return None

        entry = await self.queue.claim_next(self.worker_id, self.config.worker.lease_seconds)
        if entry is None:
            return None

        logger.debug("Processing passive memory job %s (attempt %d)", entry.job_id, entry.attempt_count)
        started_at = self.clock()
        try:
            return await self._process(entry, started_at)
        except Exception as e:
            return await self._fail(entry, e)

    async def _process(self, entry: QueueEntry, started_at: datetime) -> Optional[QueueEntry]:
        agent = self.config.get_agent(entry.agent_id)
        if agent is None:
            return await self._skip(entry, "agent_not_found")

        settings = agent.memory
        if not settings.enabled or not settings.passive_updates_enabled:
            return await self._skip(entry, "passive_updates_disabled")

        messages = await self.store.list_messages(entry.job_id)
        existing = await self.store.list(entry.agent_id, 0)

        actor = entry.actor
        transcript = build_transcript(messages, actor)
        if not transcript:
            return await self._skip(entry, "no_extractable_messages")
        transcript = clamp_chars_for_token_budget(transcript, self.config.worker.transcript_max_tokens)

        extract_model = self.config.worker.resolve_extract_model()
        extraction = await extract_candidates(
            transcript, extract_model, settings.extraction_hint, self.complete, actor=actor
        )
        if extraction.usage:
            await self._record_usage(entry, extraction.usage, EXTRACT_TURN_BASE, "passive_memory_extract", 0)

        reconcile = ReconcileResult(candidates=extraction.candidates)
        reconcile_error = None
        try:
            reconcile = await reconcile_candidates(
                self.store,
                self.embeddings,
                entry.agent_id,
                extraction.candidates,
                existing,
                self.config.worker.resolve_refine_model(),
                self.complete,
                actor=actor,
            )
        except Exception as e:
            reconcile_error = str(e) or e.__class__.__name__
            logger.warning("Reconcile step failed for job %s, using raw candidates: %s", entry.job_id, e)

        if reconcile.usage:
            await self._record_usage(entry, reconcile.usage, REFINE_TURN_BASE, "passive_memory_refine", 1)

        applied = await apply_candidates(self.store, self.embeddings, entry.agent_id, reconcile.candidates, settings)
        usage = merge_usages(extraction.usage, reconcile.usage)

        summary = {
            "model": usage.model if usage else extract_model,
            "input_chars": len(transcript),
            "actor_label": actor.label if actor else None,
            "candidate_count": len(extraction.candidates),
            "parse_failure_count": len(extraction.failures),
            "reconciled_candidate_count": len(reconcile.candidates),
            "min_confidence": MIN_CONFIDENCE,
            "dedupe_threshold": DEDUPE_THRESHOLD,
            "created_ids": applied.created_ids,
            "updated_ids": applied.updated_ids,
            "evicted_ids": applied.evicted_ids,
            "skipped": reconcile.skipped + applied.skipped,
            "decisions": [decision.to_dict() for decision in reconcile.decisions],
            "usage": usage.to_dict() if usage else None,
            "extraction_usage": extraction.usage.to_dict() if extraction.usage else None,
            "refinement_usage": reconcile.usage.to_dict() if reconcile.usage else None,
            "reconcile_error": reconcile_error,
            "duration_ms": self._elapsed_ms(started_at),
        }

        logger.info(
            "Passive memory job %s: %d created, %d updated, %d evicted, %d skipped",
            entry.job_id,
            len(applied.created_ids),
            len(applied.updated_ids),
            len(applied.evicted_ids),
            len(summary["skipped"]),
        )
        return await self.queue.mark_completed(entry.id, summary)

    async def _skip(self, entry: QueueEntry, reason: str) -> Optional[QueueEntry]:
        logger.info("Skipping passive memory job %s: %s", entry.job_id, reason)
        return await self.queue.mark_skipped(entry.id, {"reason": reason})

    async def _fail(self, entry: QueueEntry, error: Exception) -> Optional[QueueEntry]:
        message = str(error) or error.__class__.__name__
        retryable = is_retryable(entry, error)
        delay = retry_delay_seconds(entry.attempt_count)

        if retryable:
            logger.warning("Passive memory job %s failed, retrying in %ds: %s", entry.job_id, delay, message)
        else:
            logger.error("Passive memory job %s failed permanently: %s", entry.job_id, message)

        return await self.queue.mark_failed(
            entry.id,
            message,
            retryable=retryable,
            retry_delay_seconds=delay,
            summary={"reason": "processing_error", "message": message, "retryable": retryable},
        )

    async def _record_usage(
        self, entry: QueueEntry, usage: ModelUsage, turn_base: int, attempt_kind: str, attempt_index: int
    ) -> None:
        await self.store.insert_inference_call(
            InferenceCall(
                job_id=entry.job_id,
                agent_id=entry.agent_id,
                turn=turn_base + entry.attempt_count,
                model=usage.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost_usd=usage.cost_usd,
                duration_ms=usage.duration_ms,
                attempt_kind=attempt_kind,
                attempt_index=attempt_index,
            )
        )

    def _elapsed_ms(self, started_at: datetime) -> int:
        return max(0, int((self.clock() - started_at).total_seconds() * 1000))


def create_worker(config: MnemonConfig, db: Optional[Database] = None) -> PassiveMemoryWorker:
    """Wire a worker to the configured database and embedding model."""
    db = db or Database(config.db_path)
    embeddings = EmbeddingProvider(config.worker.embedding_model, enabled=config.worker.embeddings_enabled)
    return PassiveMemoryWorker(MemoryStore(db), PassiveMemoryQueue(db), config, embeddings=embeddings)


async def run_worker(config_path: Optional[Path] = None) -> None:
    """Worker process entry point. Runs until SIGINT/SIGTERM."""
    config = load_config(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    db = Database(config.db_path)
    worker = create_worker(config, db)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    worker.ensure_start()
    try:
        await stop_requested.wait()
    finally:
        await worker.stop()
        db.close()
