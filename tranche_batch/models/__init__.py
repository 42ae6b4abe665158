"""ORM models for the batch engine.  Importing this package registers every table."""

from tranche_batch.models.execution import JobExecutionModel
from tranche_batch.models.idempotency import IdempotencyAuditModel, IdempotencyRecordModel
from tranche_batch.models.staging import StagingRecordModel

__all__ = [
    "IdempotencyAuditModel",
    "IdempotencyRecordModel",
    "JobExecutionModel",
    "StagingRecordModel",
]
