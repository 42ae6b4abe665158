"""
ExecutionCoordinator -- runs one job execution end to end and owns its lifecycle.

Contract:
    ``execute(request) -> ExecutionOutcome``
        1. Idempotency: key (client-supplied, normalized, or derived) and
           request fingerprint go through IdempotencyGuard.begin.
           ReturnCached / Conflict are returned as-is; nothing runs.
        2. Proceed: a JobExecution is created in STARTED.
        3. SIMPLE: one wave holding every transaction type.
           COMPLEX: records are staged, the dependency graph is built and
           sequenced, and each wave is fed from StagingStore.fetch_ready.
           The execution enters RUNNING when the first wave is dispatched.
        4. Results are merged, wrapped with header/footer and handed to the
           OutputWriter; the execution ends COMPLETED, FAILED or STOPPED.
        5. The guard is completed or failed and staging is purged (unless
           retention applies to a failed run).
    ``stop(execution_id)`` requests cooperative cancellation.
    ``get_execution(execution_id)`` returns the current snapshot.

Architecture: tranche_batch/services.  The only component with external
    visibility.  All database I/O happens on the calling thread; partition
    workers run on a per-execution ThreadPoolExecutor sized by the job's
    ``parallel_threads`` and never touch the database.

Invariants enforced:
    - Waves run strictly in sequence; within a wave every partition reaches
      a terminal result before the next wave starts (wait(ALL_COMPLETED)).
    - A wave with a crashed partition, or a partition above the error
      threshold, aborts every later wave.
    - A stopped execution discards all partition results.
    - FAILED always carries a FailureReason.
    - Business context (execution id, business date, correlation id)
      travels in PartitionContext; LogContext only decorates log lines.
"""

from __future__ import annotations

import contextvars
import threading
from concurrent.futures import ALL_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tranche_batch.domain.idempotency_keys import (
    compute_request_fingerprint,
    derive_idempotency_key,
    normalize_client_key,
)
from tranche_batch.domain.types import (
    ExecutionOutcome,
    ExecutionRequest,
    ExecutionStatus,
    ExecutionWave,
    FailureReason,
    IdempotencyStatus,
    JobExecution,
    MergedOutput,
    OutputDocument,
    PartitionContext,
    PartitionResult,
    Proceed,
    SourceRecord,
)
from tranche_batch.models.execution import JobExecutionModel
from tranche_batch.sequencing.graph import DependencyGraphBuilder
from tranche_batch.sequencing.sequencer import TransactionSequencer
from tranche_batch.services.header_footer import HeaderFooterGenerator, build_summary
from tranche_batch.services.idempotency_guard import IdempotencyGuard
from tranche_batch.services.output_writer import (
    ExecutionObserver,
    LoggingExecutionObserver,
    OutputWriter,
)
from tranche_batch.services.partition_processor import PartitionProcessor, select_records
from tranche_batch.services.result_merger import (
    ResultMerger,
    simple_precedence,
    wave_precedence,
)
from tranche_batch.services.staging_store import StagingStore
from tranche_config.loader import compute_checksum
from tranche_config.provider import ConfigurationProvider
from tranche_config.schema import JobDefinition, ProcessingMode
from tranche_kernel.db.engine import transaction_scope
from tranche_kernel.domain.clock import Clock, SystemClock
from tranche_kernel.exceptions import (
    ConfigurationError,
    ExecutionNotFoundError,
    ExecutionStoreError,
    InfrastructureError,
    TrancheError,
)
from tranche_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.coordinator")


@dataclass
class _RunState:
    """Mutable bookkeeping for one in-flight execution (coordinator thread only)."""

    execution_id: UUID
    job: JobDefinition
    request: ExecutionRequest
    key: str
    cancel_event: threading.Event
    total_count: int = 0
    filtered_count: int = 0
    results: list[PartitionResult] = field(default_factory=list)
    running: bool = False
    stopped: bool = False
    crashed: list[PartitionResult] = field(default_factory=list)
    over_threshold: list[PartitionResult] = field(default_factory=list)
    aborted_waves: int = 0

    @property
    def succeeded_count(self) -> int:
        return sum(len(r.succeeded) for r in self.results)

    @property
    def failed_count(self) -> int:
        return sum(len(r.failed) for r in self.results)

    @property
    def error_rate_percent(self) -> float:
        processed = self.succeeded_count + self.failed_count
        if processed == 0:
            return 0.0
        return self.failed_count * 100.0 / processed


class ExecutionCoordinator:
    """Orchestrates idempotency, staging, sequencing, processing and output."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config_provider: ConfigurationProvider,
        guard: IdempotencyGuard | None = None,
        staging: StagingStore | None = None,
        processor: PartitionProcessor | None = None,
        merger: ResultMerger | None = None,
        header_footer: HeaderFooterGenerator | None = None,
        output_writer: OutputWriter | None = None,
        observer: ExecutionObserver | None = None,
        clock: Clock | None = None,
        graph_builder: DependencyGraphBuilder | None = None,
        sequencer: TransactionSequencer | None = None,
    ):
        self._session_factory = session_factory
        self._config = config_provider
        self._clock = clock or SystemClock()
        self._guard = guard or IdempotencyGuard(session_factory, clock=self._clock)
        self._staging = staging or StagingStore(session_factory, clock=self._clock)
        self._processor = processor or PartitionProcessor()
        self._merger = merger or ResultMerger()
        self._header_footer = header_footer or HeaderFooterGenerator(clock=self._clock)
        self._output_writer = output_writer
        self._observer = observer or LoggingExecutionObserver()
        self._graph_builder = graph_builder or DependencyGraphBuilder()
        self._sequencer = sequencer or TransactionSequencer()

        self._active: dict[UUID, threading.Event] = {}
        self._active_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run (or replay) one job execution.

        Raises:
            RequestConflictError: the key was used for a different request.
            InfrastructureError: a store failed and the outcome could not be
                recorded.

        Any other exception is re-raised after the execution has been
        failed as INFRASTRUCTURE and its key released.
        """
        fingerprint = compute_request_fingerprint(request)
        if request.idempotency_key:
            key = normalize_client_key(request.idempotency_key)
        else:
            key = derive_idempotency_key(request.job_config_id, request.business_date, fingerprint)

        job, config_error = self._load_job(request.job_config_id)
        execution_id = request.execution_id or uuid4()

        with LogContext.bind(
            correlation_id=request.correlation_id,
            execution_id=execution_id,
            idempotency_key=key,
            job_name=job.job_name if job else request.job_config_id,
        ):
            if job is not None:
                decision = self._guard.begin(
                    key,
                    fingerprint,
                    execution_id,
                    retry_cooldown_seconds=job.retry_cooldown_seconds,
                    ttl_seconds=job.idempotency_ttl_seconds,
                    max_retries=job.max_retries,
                )
            else:
                decision = self._guard.begin(key, fingerprint, execution_id)

            if not isinstance(decision, Proceed):
                return ExecutionOutcome(decision=decision)

            cancel_event = threading.Event()
            with self._active_lock:
                self._active[execution_id] = cancel_event
            try:
                execution, document = self._run(
                    execution_id, request, job, config_error, key, cancel_event
                )
            except Exception as exc:
                logger.error(
                    "execution_aborted",
                    extra={"execution_id": execution_id},
                    exc_info=True,
                )
                self._abandon(execution_id, job, exc)
                self._release_key(key, f"aborted: {exc}")
                raise
            finally:
                with self._active_lock:
                    self._active.pop(execution_id, None)

            return ExecutionOutcome(decision=decision, execution=execution, document=document)

    def stop(self, execution_id: UUID) -> bool:
        """Request cooperative cancellation.

        Returns True when a running execution in this coordinator was
        signalled, False when the execution is already terminal or runs
        elsewhere.

        Raises:
            ExecutionNotFoundError: no such execution.
        """
        with self._active_lock:
            event = self._active.get(execution_id)
        if event is not None:
            event.set()
            logger.info("execution_stop_requested", extra={"execution_id": execution_id})
            return True

        execution = self.get_execution(execution_id)
        logger.warning(
            "execution_stop_ignored",
            extra={"execution_id": execution_id, "status": execution.status.value},
        )
        return False

    def get_execution(self, execution_id: UUID) -> JobExecution:
        try:
            with transaction_scope(self._session_factory) as session:
                model = session.get(JobExecutionModel, execution_id)
                if model is None:
                    raise ExecutionNotFoundError(str(execution_id))
                return model.to_dto()
        except SQLAlchemyError as exc:
            raise ExecutionStoreError("get", str(execution_id), str(exc)) from exc

    def active_executions(self) -> tuple[UUID, ...]:
        with self._active_lock:
            return tuple(self._active)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _run(
        self,
        execution_id: UUID,
        request: ExecutionRequest,
        job: JobDefinition | None,
        config_error: ConfigurationError | None,
        key: str,
        cancel_event: threading.Event,
    ) -> tuple[JobExecution, OutputDocument | None]:
        self._create_execution(execution_id, request, job, key)

        if job is None:
            execution = self._finish(
                execution_id,
                ExecutionStatus.FAILED,
                failure_reason=FailureReason.CONFIGURATION,
                error_summary=str(config_error),
            )
            self._guard.fail(key, f"{FailureReason.CONFIGURATION.value}: {config_error}")
            return execution, None

        state = _RunState(
            execution_id=execution_id,
            job=job,
            request=request,
            key=key,
            cancel_event=cancel_event,
        )
        logger.info(
            "execution_started",
            extra={
                "execution_id": execution_id,
                "job_config_id": job.job_config_id,
                "processing_mode": job.processing_mode.value,
                "parallel_threads": job.parallel_threads,
            },
        )

        try:
            with ThreadPoolExecutor(
                max_workers=job.parallel_threads,
                thread_name_prefix=f"tranche-{execution_id.hex[:8]}",
            ) as pool:
                if job.processing_mode == ProcessingMode.SIMPLE:
                    precedence = self._run_simple(state, pool)
                else:
                    precedence = self._run_complex(state, pool)
        except ConfigurationError as exc:
            return self._fail(state, FailureReason.CONFIGURATION, str(exc)), None
        except InfrastructureError as exc:
            return self._fail(state, FailureReason.INFRASTRUCTURE, str(exc)), None

        if state.stopped:
            return self._stop(state), None
        if state.crashed:
            codes = ", ".join(r.transaction_type for r in state.crashed)
            return self._fail(state, FailureReason.INFRASTRUCTURE, f"partition crashed: {codes}"), None
        if state.aborted_waves and state.over_threshold:
            codes = ", ".join(r.transaction_type for r in state.over_threshold)
            summary = (
                f"partition error rate above threshold {job.error_threshold_percent}% in {codes}; "
                f"{state.aborted_waves} later wave(s) not run"
            )
            return self._fail(state, FailureReason.THRESHOLD_EXCEEDED, summary), None
        if state.error_rate_percent > job.error_threshold_percent:
            summary = (
                f"error rate {state.error_rate_percent:.2f}% exceeds "
                f"threshold {job.error_threshold_percent}%"
            )
            return self._fail(state, FailureReason.THRESHOLD_EXCEEDED, summary), None

        merged = self._merger.merge(state.results, precedence)
        try:
            document = self._build_document(state, merged)
        except ConfigurationError as exc:
            return self._fail(state, FailureReason.CONFIGURATION, str(exc)), None

        location = None
        if self._output_writer is not None:
            try:
                location = self._output_writer.write(self.get_execution(execution_id), document)
            except OSError as exc:
                logger.error("output_write_failed", extra={"execution_id": execution_id}, exc_info=True)
                return self._fail(state, FailureReason.INFRASTRUCTURE, f"output write failed: {exc}"), None

        execution = self._finish(execution_id, ExecutionStatus.COMPLETED, **self._counts(state))
        self._guard.complete(key, self._result_payload(execution, merged, location))
        self._purge(execution_id)
        logger.info(
            "execution_completed",
            extra={
                "execution_id": execution_id,
                "record_count": merged.record_count,
                "error_count": merged.failed_count,
                "content_hash": merged.content_hash,
            },
        )
        return execution, document

    def _run_simple(self, state: _RunState, pool: ThreadPoolExecutor) -> dict[str, tuple[Any, ...]]:
        """One wave of every transaction type; records come from the request."""
        job = state.job
        inputs = self._select_inputs(state)
        numbered: dict[str, list[SourceRecord]] = {}
        if state.request.records is None:
            for tt in job.transaction_types:
                self._staging.mark_dependency_met(state.execution_id, tt.code)
                numbered[tt.code] = [
                    r.as_source() for r in self._staging.fetch_ready(state.execution_id, tt.code)
                ]
        else:
            for code, payloads in inputs.items():
                numbered[code] = [
                    SourceRecord(sequence_number=i, payload=p)
                    for i, p in enumerate(payloads, start=1)
                ]
        state.total_count = sum(len(v) for v in numbered.values())

        ordered = sorted(job.transaction_types, key=lambda t: (t.processing_order, t.code))
        wave = ExecutionWave(index=0, transaction_types=tuple(t.code for t in ordered))
        if wave.transaction_types:
            self._run_wave(state, pool, wave, numbered)
            if state.request.records is None:
                self._write_back(state, state.results)
        return simple_precedence(job)

    def _run_complex(self, state: _RunState, pool: ThreadPoolExecutor) -> dict[str, tuple[Any, ...]]:
        """Stage, sequence, then run waves fed from the staging store."""
        job = state.job
        if state.request.records is not None:
            for code, payloads in self._select_inputs(state).items():
                self._staging.insert_many(state.execution_id, code, payloads, chunk_size=job.chunk_size)
        state.total_count = self._staging.counts(state.execution_id).total

        graph = self._graph_builder.build(job.transaction_types, job.dependencies)
        plan = self._sequencer.sequence(graph)

        for wave in plan.waves:
            if state.cancel_event.is_set():
                state.stopped = True
                break
            inputs: dict[str, list[SourceRecord]] = {}
            for code in wave.transaction_types:
                self._staging.mark_dependency_met(state.execution_id, code)
                inputs[code] = [
                    r.as_source() for r in self._staging.fetch_ready(state.execution_id, code)
                ]

            wave_results = self._run_wave(state, pool, wave, inputs)
            self._write_back(state, wave_results)
            self._update_progress(state)

            if state.stopped or state.crashed or state.over_threshold:
                if wave.index + 1 < plan.wave_count:
                    state.aborted_waves = plan.wave_count - wave.index - 1
                    logger.warning(
                        "remaining_waves_aborted",
                        extra={
                            "execution_id": state.execution_id,
                            "failed_wave": wave.index,
                            "aborted_waves": state.aborted_waves,
                        },
                    )
                break

        return wave_precedence(job, plan)

    def _select_inputs(self, state: _RunState) -> dict[str, list[Mapping[str, Any]]]:
        """Route request records to configured types and apply source selectors."""
        records = state.request.records or {}
        configured = {tt.code for tt in state.job.transaction_types}
        for code, payloads in records.items():
            if code not in configured:
                # Unrouted records are counted, never silently dropped
                state.filtered_count += len(payloads)
                logger.warning(
                    "unrouted_records",
                    extra={"transaction_type": code, "count": len(payloads)},
                )

        selected: dict[str, list[Mapping[str, Any]]] = {}
        for tt in state.job.transaction_types:
            payloads, filtered = select_records(tt, records.get(tt.code, ()))
            selected[tt.code] = payloads
            state.filtered_count += filtered
        return selected

    # -------------------------------------------------------------------------
    # Waves
    # -------------------------------------------------------------------------

    def _run_wave(
        self,
        state: _RunState,
        pool: ThreadPoolExecutor,
        wave: ExecutionWave,
        inputs: Mapping[str, Sequence[SourceRecord]],
    ) -> list[PartitionResult]:
        """Dispatch every partition of a wave and block until all are terminal."""
        job = state.job
        if not state.running:
            self._transition_running(state)

        futures: dict[Future[PartitionResult], str] = {}
        for code in wave.transaction_types:
            context = PartitionContext(
                execution_id=state.execution_id,
                job=job,
                transaction_type=job.transaction_type(code),
                business_date=state.request.business_date,
                correlation_id=state.request.correlation_id,
                cancel_event=state.cancel_event,
            )
            # Workers inherit the coordinator's log context
            ctx = contextvars.copy_context()
            future = pool.submit(ctx.run, self._process_partition, context, inputs.get(code, ()))
            futures[future] = code

        logger.info(
            "wave_dispatched",
            extra={
                "execution_id": state.execution_id,
                "wave_index": wave.index,
                "transaction_types": list(wave.transaction_types),
            },
        )
        wait(futures, return_when=ALL_COMPLETED)

        results: list[PartitionResult] = []
        for future, code in futures.items():
            try:
                result = future.result()
            except ConfigurationError:
                raise
            except Exception as exc:
                logger.error(
                    "partition_crashed",
                    extra={"execution_id": state.execution_id, "transaction_type": code},
                    exc_info=exc,
                )
                result = PartitionResult(
                    execution_id=state.execution_id,
                    transaction_type=code,
                    crashed=True,
                    crash_message=f"{type(exc).__name__}: {exc}",
                )
            results.append(result)

        for result in results:
            if result.crashed:
                state.crashed.append(result)
                continue
            state.results.append(result)
            if result.stopped:
                state.stopped = True
            elif result.error_rate_percent > job.error_threshold_percent:
                state.over_threshold.append(result)
        if state.cancel_event.is_set():
            state.stopped = True

        logger.info(
            "wave_completed",
            extra={
                "execution_id": state.execution_id,
                "wave_index": wave.index,
                "succeeded": sum(len(r.succeeded) for r in results),
                "failed": sum(len(r.failed) for r in results),
                "crashed": sum(1 for r in results if r.crashed),
            },
        )
        return results

    def _process_partition(
        self, context: PartitionContext, records: Sequence[SourceRecord]
    ) -> PartitionResult:
        with LogContext.bind(transaction_type=context.transaction_type.code):
            return self._processor.process(context, records)

    def _write_back(self, state: _RunState, results: Sequence[PartitionResult]) -> None:
        """Record per-record outcomes of staged records."""
        for result in results:
            if result.crashed:
                continue
            processed = [r.record_id for r in result.succeeded if r.record_id is not None]
            errors = {
                f.record.record_id: f.message
                for f in result.failed
                if f.record.record_id is not None
            }
            if processed or errors:
                self._staging.record_outcomes(processed, errors)

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    def _build_document(self, state: _RunState, merged: MergedOutput) -> OutputDocument:
        job = state.job
        summary = build_summary(
            state.execution_id, job, state.request.business_date, merged, state.total_count
        )
        variables: dict[str, Any] = dict(state.request.parameters)
        variables.update(summary.as_variables())

        header = footer = None
        if job.header_enabled and job.header_template:
            header = self._header_footer.header(job.header_template, variables)
        if job.footer_enabled and job.footer_template:
            footer = self._header_footer.footer(job.footer_template, variables)
        return OutputDocument(
            body=merged.lines,
            content_hash=merged.content_hash,
            header=header,
            footer=footer,
        )

    @staticmethod
    def _result_payload(
        execution: JobExecution, merged: MergedOutput, location: str | None
    ) -> dict[str, Any]:
        return {
            "execution_id": str(execution.execution_id),
            "status": execution.status.value,
            "total_count": execution.total_count,
            "processed_count": execution.processed_count,
            "error_count": execution.error_count,
            "filtered_count": execution.filtered_count,
            "record_count": merged.record_count,
            "content_hash": merged.content_hash,
            "output_location": location,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _load_job(
        self, job_config_id: str
    ) -> tuple[JobDefinition | None, ConfigurationError | None]:
        try:
            return self._config.get_job(job_config_id), None
        except ConfigurationError as exc:
            logger.error(
                "job_configuration_rejected",
                extra={"job_config_id": job_config_id, "error_code": exc.code},
            )
            return None, exc

    def _create_execution(
        self,
        execution_id: UUID,
        request: ExecutionRequest,
        job: JobDefinition | None,
        key: str,
    ) -> None:
        now = self._clock.now_utc()
        try:
            with transaction_scope(self._session_factory) as session:
                model = JobExecutionModel(
                    id=execution_id,
                    job_config_id=request.job_config_id,
                    job_name=job.job_name if job else request.job_config_id,
                    business_date=request.business_date,
                    processing_mode=(job.processing_mode if job else ProcessingMode.SIMPLE).value,
                    status=ExecutionStatus.STARTED.value,
                    idempotency_key=key,
                    correlation_id=request.correlation_id,
                    config_checksum=compute_checksum(job) if job else None,
                    started_at=now,
                )
                session.add(model)
                session.flush()
                execution = model.to_dto()
        except SQLAlchemyError as exc:
            raise ExecutionStoreError("create", str(execution_id), str(exc)) from exc
        self._notify(execution)

    def _transition_running(self, state: _RunState) -> None:
        self._transition(
            state.execution_id,
            ExecutionStatus.RUNNING,
            total_count=state.total_count,
            filtered_count=state.filtered_count,
        )
        state.running = True

    def _update_progress(self, state: _RunState) -> None:
        try:
            with transaction_scope(self._session_factory) as session:
                model = session.get(JobExecutionModel, state.execution_id)
                model.processed_count = state.succeeded_count
                model.error_count = state.failed_count
        except SQLAlchemyError as exc:
            raise ExecutionStoreError("progress", str(state.execution_id), str(exc)) from exc

    def _transition(
        self,
        execution_id: UUID,
        target: ExecutionStatus,
        **values: Any,
    ) -> JobExecution:
        now = self._clock.now_utc()
        try:
            with transaction_scope(self._session_factory) as session:
                model = session.execute(
                    select(JobExecutionModel)
                    .where(JobExecutionModel.id == execution_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if model is None:
                    raise ExecutionNotFoundError(str(execution_id))
                model.transition_to(target)
                for name, value in values.items():
                    setattr(model, name, value)
                if target == ExecutionStatus.RUNNING:
                    model.running_at = now
                elif target.is_terminal:
                    model.finished_at = now
                session.flush()
                execution = model.to_dto()
        except SQLAlchemyError as exc:
            raise ExecutionStoreError(target.value.lower(), str(execution_id), str(exc)) from exc
        self._notify(execution)
        return execution

    def _finish(
        self,
        execution_id: UUID,
        status: ExecutionStatus,
        failure_reason: FailureReason | None = None,
        **values: Any,
    ) -> JobExecution:
        if failure_reason is not None:
            values["failure_reason"] = failure_reason.value
        return self._transition(execution_id, status, **values)

    def _fail(self, state: _RunState, reason: FailureReason, summary: str) -> JobExecution:
        execution = self._finish(
            state.execution_id,
            ExecutionStatus.FAILED,
            failure_reason=reason,
            error_summary=summary,
            **self._counts(state),
        )
        logger.error(
            "execution_failed",
            extra={
                "execution_id": state.execution_id,
                "failure_reason": reason.value,
                "error_summary": summary,
                "error_count": execution.error_count,
            },
        )
        self._guard.fail(state.key, f"{reason.value}: {summary}")
        if not state.job.staging_retention_on_failure:
            self._purge(state.execution_id)
        return execution

    def _stop(self, state: _RunState) -> JobExecution:
        # Partial results of a stopped run are never merged
        execution = self._finish(
            state.execution_id,
            ExecutionStatus.STOPPED,
            error_summary="stopped on request",
            **self._counts(state),
        )
        logger.warning(
            "execution_stopped",
            extra={
                "execution_id": state.execution_id,
                "discarded_records": state.succeeded_count + state.failed_count,
            },
        )
        self._guard.fail(state.key, "STOPPED")
        if not state.job.staging_retention_on_failure:
            self._purge(state.execution_id)
        return execution

    @staticmethod
    def _counts(state: _RunState) -> dict[str, int]:
        return {
            "total_count": state.total_count,
            "processed_count": state.succeeded_count,
            "error_count": state.failed_count,
            "filtered_count": state.filtered_count,
        }

    def _purge(self, execution_id: UUID) -> None:
        self._staging.purge(execution_id)

    def _abandon(self, execution_id: UUID, job: JobDefinition | None, exc: Exception) -> None:
        """Close out an execution left non-terminal by an unexpected error.

        The execution ends FAILED (INFRASTRUCTURE) and its staging follows
        the job's retention policy.  Failures here are logged; the original
        error is what the caller sees.
        """
        try:
            with transaction_scope(self._session_factory) as session:
                status = session.execute(
                    select(JobExecutionModel.status).where(JobExecutionModel.id == execution_id)
                ).scalar_one_or_none()
            if status is None:
                return
            if not ExecutionStatus(status).is_terminal:
                self._finish(
                    execution_id,
                    ExecutionStatus.FAILED,
                    failure_reason=FailureReason.INFRASTRUCTURE,
                    error_summary=f"aborted: {type(exc).__name__}: {exc}",
                )
            if job is None or not job.staging_retention_on_failure:
                self._purge(execution_id)
        except (TrancheError, SQLAlchemyError):
            logger.error("execution_abandon_failed", extra={"execution_id": execution_id}, exc_info=True)

    def _release_key(self, key: str, reason: str) -> None:
        """Fail the idempotency key after an aborted run so it can be retried."""
        try:
            record = self._guard.get(key)
            if record is not None and record.status == IdempotencyStatus.IN_PROGRESS:
                self._guard.fail(key, reason)
        except (TrancheError, SQLAlchemyError):
            logger.error("idempotency_release_failed", extra={"idempotency_key": key}, exc_info=True)

    def _notify(self, execution: JobExecution) -> None:
        try:
            self._observer.on_status_change(execution)
        except Exception:
            logger.error(
                "execution_observer_failed",
                extra={"execution_id": execution.execution_id},
                exc_info=True,
            )
