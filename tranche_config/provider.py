"""
Read-only configuration providers.

The engine never stores or versions job definitions; it asks a provider for
one by id.  ``InMemoryConfigurationProvider`` serves tests and embedding
callers, ``YamlDirectoryConfigurationProvider`` reads ``<job_config_id>.yaml``
files from a directory.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable, Protocol

from tranche_config.loader import load_job_definition
from tranche_config.schema import JobDefinition
from tranche_config.validator import ensure_valid
from tranche_kernel.exceptions import JobConfigNotFoundError
from tranche_kernel.logging_config import get_logger

logger = get_logger("config.provider")


class ConfigurationProvider(Protocol):
    """Source of validated job definitions."""

    def get_job(self, job_config_id: str) -> JobDefinition: ...


class InMemoryConfigurationProvider:
    """Provider over job definitions supplied up front."""

    def __init__(self, jobs: Iterable[JobDefinition] = ()):
        self._jobs: dict[str, JobDefinition] = {}
        for job in jobs:
            self.register(job)

    def register(self, job: JobDefinition) -> None:
        self._jobs[job.job_config_id] = job

    def get_job(self, job_config_id: str) -> JobDefinition:
        try:
            job = self._jobs[job_config_id]
        except KeyError:
            raise JobConfigNotFoundError(job_config_id) from None
        return ensure_valid(job)


class YamlDirectoryConfigurationProvider:
    """Provider reading one YAML document per job from ``directory``.

    Parsed definitions are cached by file modification time.
    """

    def __init__(self, directory: Path):
        self._directory = Path(directory)
        self._cache: dict[str, tuple[float, JobDefinition]] = {}
        self._lock = threading.Lock()

    def get_job(self, job_config_id: str) -> JobDefinition:
        path = self._path_for(job_config_id)
        if path is None:
            raise JobConfigNotFoundError(job_config_id)

        mtime = path.stat().st_mtime
        with self._lock:
            cached = self._cache.get(job_config_id)
            if cached is not None and cached[0] == mtime:
                return cached[1]

        job = ensure_valid(load_job_definition(path))
        logger.info(
            "job_definition_loaded",
            extra={"job_config_id": job_config_id, "path": str(path), "version": job.version},
        )
        with self._lock:
            self._cache[job_config_id] = (mtime, job)
        return job

    def _path_for(self, job_config_id: str) -> Path | None:
        for suffix in (".yaml", ".yml"):
            candidate = self._directory / f"{job_config_id}{suffix}"
            if candidate.is_file():
                return candidate
        return None
