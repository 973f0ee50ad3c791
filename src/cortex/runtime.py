"""Central runtime — boots and holds all live components."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from cortex.automations.actions import ActionRunner
from cortex.automations.conditions import ConditionEvaluator
from cortex.automations.executor import RunExecutor
from cortex.automations.matcher import AutomationMatcher
from cortex.automations.models import Event, Run
from cortex.cache.entities import EntityCache
from cortex.cache.fetch_dedup import FetchDeduplicator
from cortex.cache.fetcher import CachingFetcher
from cortex.config import ConfigManager
from cortex.config.schema import CortexConfig
from cortex.errors import CortexError, StoreUnavailableError
from cortex.integrations import OllamaClient, WebhookNotifier
from cortex.protocols import NotificationSink, SemanticClassifier, TextGenerator, ToolExecutor
from cortex.storage.events import EventStore
from cortex.storage.kv import KVStore, create_kv
from cortex.storage.rules import RuleStore

logger = logging.getLogger(__name__)


class CortexRuntime:
    """Central runtime — boots and holds all live components.

    The runtime is the single place that wires config to components and the
    context object injected into the matcher and executor. The CLI and any
    ingestion service use it to process events and drive the sweep.

    Collaborators passed in explicitly take precedence over the ones built
    from config.
    """

    def __init__(
        self,
        config: CortexConfig | None = None,
        *,
        kv: KVStore | None = None,
        tool_executor: ToolExecutor | None = None,
        text_generator: TextGenerator | None = None,
        classifier: SemanticClassifier | None = None,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or ConfigManager().load()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._started = False
        self._running = False
        self._task: asyncio.Task | None = None

        self.kv: KVStore | None = kv
        self.tool_executor = tool_executor
        self.text_generator = text_generator
        self.classifier = classifier
        self.notifier = notifier

        # Component references (populated by start())
        self.rules: RuleStore | None = None
        self.event_store: EventStore | None = None
        self.entity_cache: EntityCache | None = None
        self.fetch_dedup: FetchDeduplicator | None = None
        self.fetcher: CachingFetcher | None = None
        self.matcher: AutomationMatcher | None = None
        self.executor: RunExecutor | None = None

    @property
    def config(self) -> CortexConfig:
        return self._config

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, run_sweep: bool = True) -> None:
        """Initialize all components and, optionally, the sweep loop."""
        if self._started:
            logger.warning("Runtime already started")
            return

        logger.info("Cortex runtime starting...")
        cfg = self._config
        cfg.get_data_path().mkdir(parents=True, exist_ok=True)
        db_path = cfg.get_sqlite_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)

        # 1. Stores
        if self.kv is None:
            self.kv = create_kv(cfg.store.kv_backend, cfg.store.redis_url, cfg.store.key_prefix)
        self.rules = RuleStore(db_path)
        self.event_store = EventStore(
            self.kv,
            dedupe_ttl=cfg.events.dedupe_ttl_seconds,
            event_ttl=cfg.events.event_ttl_seconds,
        )
        logger.info("Rule store initialized: %s", db_path)

        # 2. Caches
        self.entity_cache = EntityCache(
            self.kv,
            ttl=cfg.cache.entity_ttl_seconds,
            max_body_bytes=cfg.cache.max_body_bytes,
            recent_limit=cfg.cache.recent_limit,
        )
        self.fetch_dedup = FetchDeduplicator(self.kv, ttl=cfg.cache.fetch_dedup_ttl_seconds)

        # 3. Collaborators
        if cfg.ollama.enabled and (self.text_generator is None or self.classifier is None):
            ollama = OllamaClient(
                model=cfg.ollama.model,
                host=cfg.ollama.base_url(),
                classifier_model=cfg.ollama.classifier_model,
                timeout=cfg.ollama.timeout_seconds,
            )
            self.text_generator = self.text_generator or ollama
            self.classifier = self.classifier or ollama
            logger.info("Ollama backend: %s (%s)", cfg.ollama.base_url(), cfg.ollama.model)
        if self.notifier is None and cfg.notify.webhook_url:
            self.notifier = WebhookNotifier(
                cfg.notify.webhook_url, timeout=cfg.notify.timeout_seconds
            )
            logger.info("Webhook notifier initialized")
        if self.tool_executor is not None:
            self.fetcher = CachingFetcher(
                self.entity_cache,
                self.fetch_dedup,
                self.tool_executor,
                tool_timeout=cfg.runtime.tool_timeout_seconds,
            )

        # 4. Matcher and executor
        self.matcher = AutomationMatcher(
            self.rules,
            ConditionEvaluator(self.classifier, timeout=cfg.runtime.classifier_timeout_seconds),
        )
        actions = ActionRunner(
            tool_executor=self.tool_executor,
            text_generator=self.text_generator,
            notifier=self.notifier,
            fetcher=self.fetcher,
            tool_timeout=cfg.runtime.tool_timeout_seconds,
            clock=self._clock,
        )
        self.executor = RunExecutor(
            self.rules,
            actions,
            clock=self._clock,
            max_concurrent_runs=cfg.runtime.max_concurrent_runs,
        )

        self._started = True
        if run_sweep:
            self._running = True
            self._task = asyncio.create_task(self._sweep_loop())
            logger.info("Sweep loop started (every %ss)", cfg.runtime.sweep_interval_seconds)
        logger.info("Cortex runtime started")

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        if not self._started:
            return

        logger.info("Cortex runtime stopping...")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Sweep task cancelled")
            self._task = None

        if self.rules is not None:
            self.rules.close()
            logger.info("Rule store closed")
        if self.kv is not None:
            await self.kv.close()

        self._started = False
        logger.info("Cortex runtime stopped")

    def _require_started(self) -> None:
        if not self._started:
            raise CortexError("Runtime not started")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_event(self, event: Event) -> list[Run]:
        """Dedup, match and execute *event*.

        Returns the runs created for it, as they stand after execution.
        A store failure aborts this event and propagates; a failing run does
        not affect its siblings.
        """
        self._require_started()
        try:
            if not await self.event_store.write_event(event):
                return []
            runs = await self.matcher.match(event)
        except StoreUnavailableError as exc:
            logger.error("Dropping event %s: %s", event.id, exc.message)
            raise

        if not runs:
            return []
        results = await asyncio.gather(
            *(self.executor.execute(run) for run in runs), return_exceptions=True
        )
        finished: list[Run] = []
        for run, result in zip(runs, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Run %s aborted: %s", run.id, result)
                finished.append(run)
            else:
                finished.append(result)
        return finished

    async def match_schedule(self, now: datetime | None = None) -> list[Run]:
        """Feed this minute's schedule tick for every owner through ingestion."""
        self._require_started()
        runs: list[Run] = []
        for tick in self.matcher.schedule_ticks(now or self._clock()):
            runs.extend(await self.process_event(tick))
        return runs

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Resume due paused runs and fire schedule ticks once."""
        self._require_started()
        now = now or self._clock()
        resumed = await self.executor.resume_waiting_runs(now)
        scheduled: list[Run] = []
        if self._config.runtime.schedule_enabled:
            scheduled = await self.match_schedule(now)
        if resumed or scheduled:
            logger.info(
                "Sweep resumed %d run(s), started %d scheduled", len(resumed), len(scheduled)
            )
        return {"resumed": len(resumed), "scheduled": len(scheduled)}

    async def rerun(self, run_id: str) -> Run:
        self._require_started()
        return await self.executor.rerun(run_id)

    async def _sweep_loop(self) -> None:
        """Main loop: sweep, sleep, repeat."""
        interval = self._config.runtime.sweep_interval_seconds
        while self._running:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep failed")
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
