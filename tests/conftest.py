"""
Pytest fixtures for the tranche test suite.

Provides:
- In-memory SQLite engine (StaticPool) with every table created
- A session factory for services that open their own transactions
- A DeterministicClock
- Structured-log capture
- Small job-definition builders shared across test modules
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from tranche_config.schema import (
    FieldMappingDef,
    FieldType,
    JobDefinition,
    OutputFormat,
    ProcessingMode,
    SourceRule,
    TransactionTypeDef,
    ValidationRuleDef,
)
from tranche_kernel.db.base import Base
from tranche_kernel.db.engine import create_sqlite_engine
from tranche_kernel.domain.clock import DeterministicClock
from tranche_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

# Register every mapped table on Base.metadata
import tranche_batch.models  # noqa: F401
import tranche_kernel.services.sequence_service  # noqa: F401


FIXED_NOW = datetime(2026, 3, 31, 18, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, handler=logging.NullHandler())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture tranche logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, coordinator):
            coordinator.execute(request)
            logs = captured_logs()
            assert any(r["message"] == "execution_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("tranche")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    eng = create_sqlite_engine("sqlite://")
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock():
    return DeterministicClock(FIXED_NOW)


# =============================================================================
# Job definition builders
# =============================================================================


def _field(target, position, source=None, *, required=False, field_type=FieldType.STRING, length=None, **kw):
    """Shorthand for a source-copy field mapping."""
    return FieldMappingDef(
        target=target,
        position=position,
        rule=SourceRule(field=source or target),
        field_type=field_type,
        length=length,
        validation=ValidationRuleDef(required=required),
        **kw,
    )


def _make_type(code, order=0, depends_on=(), mappings=None, **kw):
    return TransactionTypeDef(
        code=code,
        processing_order=order,
        depends_on=tuple(depends_on),
        field_mappings=tuple(mappings) if mappings is not None else (
            _field("id", 1, required=True),
            _field("amount", 2, field_type=FieldType.DECIMAL),
        ),
        **kw,
    )


def _make_job(
    types,
    *,
    job_config_id="daily_payments",
    mode=ProcessingMode.SIMPLE,
    threshold=0.0,
    **kw,
):
    return JobDefinition(
        job_config_id=job_config_id,
        job_name=job_config_id.replace("_", " ").title(),
        processing_mode=mode,
        error_threshold_percent=threshold,
        output_format=kw.pop("output_format", OutputFormat.DELIMITED),
        transaction_types=tuple(types),
        **kw,
    )


@pytest.fixture
def field_def():
    """``field_def(target, position, source=None, required=False, ...)``"""
    return _field


@pytest.fixture
def make_type():
    """``make_type(code, order=0, depends_on=(), mappings=None, ...)``"""
    return _make_type


@pytest.fixture
def make_job():
    """``make_job(types, job_config_id=..., mode=SIMPLE, threshold=0.0, ...)``"""
    return _make_job
