"""
BatchOrchestrator -- DI container for the batch engine.

Contract:
    Wires the configuration provider, idempotency guard, staging store,
    processor, merger, header/footer generator, output writer and observer
    into one ExecutionCoordinator.  Single place where the engine's
    dependencies are composed.

Architecture: tranche_batch (top-level).  The canonical entry point for
    running jobs; scripts and tests build the engine through here.

Invariants enforced:
    - Every service receives the same Clock.
    - Every service shares one session factory; each opens its own short
      transactions.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from tranche_batch.services.coordinator import ExecutionCoordinator
from tranche_batch.services.header_footer import HeaderFooterGenerator
from tranche_batch.services.idempotency_guard import IdempotencyGuard
from tranche_batch.services.output_writer import (
    ExecutionObserver,
    FileOutputWriter,
    LoggingExecutionObserver,
    OutputWriter,
)
from tranche_batch.services.partition_processor import PartitionProcessor
from tranche_batch.services.result_merger import ResultMerger
from tranche_batch.services.staging_store import StagingStore
from tranche_config.provider import ConfigurationProvider, YamlDirectoryConfigurationProvider
from tranche_kernel.domain.clock import Clock, SystemClock
from tranche_kernel.logging_config import get_logger

logger = get_logger("batch.orchestrator")


class BatchOrchestrator:
    """DI container for the batch engine.

    Contract:
        - ``from_session_factory()`` creates a fully wired orchestrator.
        - ``create_coordinator()`` returns the ExecutionCoordinator.

    Non-goals:
        - Does NOT create tables -- see ``tranche_kernel.db.engine.create_tables``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config_provider: ConfigurationProvider,
        clock: Clock | None = None,
        output_writer: OutputWriter | None = None,
        observer: ExecutionObserver | None = None,
        stale_after_seconds: int | None = 1800,
    ) -> None:
        self._session_factory = session_factory
        self._config_provider = config_provider
        self._clock = clock or SystemClock()
        self._output_writer = output_writer
        self._observer = observer or LoggingExecutionObserver()
        self._guard = IdempotencyGuard(
            session_factory,
            clock=self._clock,
            stale_after_seconds=stale_after_seconds,
        )
        self._staging = StagingStore(session_factory, clock=self._clock)
        self._coordinator: ExecutionCoordinator | None = None

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker[Session],
        config_provider: ConfigurationProvider | None = None,
        config_dir: str | Path | None = None,
        output_dir: str | Path | None = None,
        clock: Clock | None = None,
        observer: ExecutionObserver | None = None,
    ) -> BatchOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            session_factory: Factory for short-lived sessions.
            config_provider: Job definition source.  If None, ``config_dir``
                is read with YamlDirectoryConfigurationProvider.
            output_dir: If given, completed documents are written there.
            clock: Optional clock for deterministic testing.
        """
        if config_provider is None:
            if config_dir is None:
                raise ValueError("config_provider or config_dir is required")
            config_provider = YamlDirectoryConfigurationProvider(Path(config_dir))

        writer = FileOutputWriter(output_dir) if output_dir is not None else None
        logger.info(
            "orchestrator_created",
            extra={
                "config_provider": type(config_provider).__name__,
                "output_dir": str(output_dir) if output_dir is not None else None,
            },
        )
        return cls(
            session_factory=session_factory,
            config_provider=config_provider,
            clock=clock,
            output_writer=writer,
            observer=observer,
        )

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    def create_coordinator(self) -> ExecutionCoordinator:
        """The coordinator is created once; stop() needs the same instance."""
        if self._coordinator is None:
            self._coordinator = ExecutionCoordinator(
                session_factory=self._session_factory,
                config_provider=self._config_provider,
                guard=self._guard,
                staging=self._staging,
                processor=PartitionProcessor(),
                merger=ResultMerger(),
                header_footer=HeaderFooterGenerator(clock=self._clock),
                output_writer=self._output_writer,
                observer=self._observer,
                clock=self._clock,
            )
        return self._coordinator

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def guard(self) -> IdempotencyGuard:
        return self._guard

    @property
    def staging(self) -> StagingStore:
        return self._staging

    @property
    def config_provider(self) -> ConfigurationProvider:
        return self._config_provider
