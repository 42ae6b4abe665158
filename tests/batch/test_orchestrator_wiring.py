"""
BatchOrchestrator wiring: provider selection, shared collaborators, and a
YAML-configured job run through the composed engine.
"""

import textwrap
from datetime import date

import pytest

from tranche_batch.domain.types import ExecutionRequest, ExecutionStatus
from tranche_batch.orchestrator import BatchOrchestrator
from tranche_config.provider import (
    InMemoryConfigurationProvider,
    YamlDirectoryConfigurationProvider,
)

REMITTANCE_YAML = textwrap.dedent("""
    job:
      jobConfigId: remittance
      jobName: Remittance
      outputFormat: DELIMITED
      delimiter: "|"
      footerTemplate: "TRL|${record_count}|${total_amount|.2f}"
      aggregates:
        - name: total_amount
          field: amount
          function: sum
      transactionTypes:
        - code: PAYMENT
          processingOrder: 1
          field_mappings:
            - target: id
              source: payment_id
              validation:
                required: true
            - target: amount
              source: amount
              type: DECIMAL
              format: ".2f"
""")


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "jobs"
    directory.mkdir()
    (directory / "remittance.yaml").write_text(REMITTANCE_YAML)
    return directory


class TestFactory:

    def test_requires_a_configuration_source(self, session_factory):
        with pytest.raises(ValueError):
            BatchOrchestrator.from_session_factory(session_factory)

    def test_config_dir_uses_yaml_provider(self, session_factory, config_dir):
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_dir=config_dir
        )
        assert isinstance(orchestrator.config_provider, YamlDirectoryConfigurationProvider)

    def test_explicit_provider_wins(self, session_factory, config_dir):
        provider = InMemoryConfigurationProvider()
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_provider=provider, config_dir=config_dir
        )
        assert orchestrator.config_provider is provider

    def test_clock_shared(self, session_factory, clock):
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_provider=InMemoryConfigurationProvider(), clock=clock
        )
        assert orchestrator.clock is clock

    def test_coordinator_created_once(self, session_factory):
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_provider=InMemoryConfigurationProvider()
        )
        assert orchestrator.create_coordinator() is orchestrator.create_coordinator()


class TestComposedRun:

    def test_yaml_job_written_to_output_dir(self, session_factory, clock, config_dir, tmp_path):
        output_dir = tmp_path / "out"
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_dir=config_dir, output_dir=output_dir, clock=clock
        )

        outcome = orchestrator.create_coordinator().execute(ExecutionRequest(
            job_config_id="remittance",
            business_date=date(2026, 3, 31),
            records={"PAYMENT": [
                {"payment_id": "P1", "amount": "10.5"},
                {"payment_id": "P2", "amount": "4"},
            ]},
        ))

        assert outcome.execution.status == ExecutionStatus.COMPLETED
        written = list(output_dir.iterdir())
        assert len(written) == 1
        assert written[0].read_text() == "P1|10.50\nP2|4.00\nTRL|2|14.50\n"

    def test_guard_shared_with_coordinator(self, session_factory, clock, config_dir):
        orchestrator = BatchOrchestrator.from_session_factory(
            session_factory, config_dir=config_dir, clock=clock
        )
        request = ExecutionRequest(
            job_config_id="remittance",
            business_date=date(2026, 3, 31),
            records={"PAYMENT": [{"payment_id": "P1", "amount": "1"}]},
            idempotency_key="rem-1",
        )

        orchestrator.create_coordinator().execute(request)

        record = orchestrator.guard.get("REM-1")
        assert record.status.value == "COMPLETED"
        assert record.result_payload["record_count"] == 1
