"""
Dump/export command construction and concurrent dispatch.

Commands are built as argument lists and never pass through a shell.
ExportCoordinator runs a batch of independent jobs on a thread pool,
staggering their start so a burst of connections does not hit the
replica at once, and joins on every job before returning.
"""

import json
import logging
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from mongobackup.config import MongoCredentials, StandaloneDatabase


logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Raised when one or more export jobs of a batch fail."""

    def __init__(self, failures: List['ExportOutcome']):
        self.failures = failures
        summary = '; '.join(f"{f.job.name}: {f.error}" for f in failures)
        super().__init__(f"{len(failures)} export job(s) failed: {summary}")


@dataclass
class ExportJob:
    """A single dump/export subprocess bound to one collection."""
    name: str
    argv: List[str]
    output_path: str
    secrets: Sequence[str] = field(default_factory=tuple, repr=False)

    def display_command(self) -> str:
        """Command line with credentials masked, for logging."""
        return ' '.join('****' if arg in self.secrets else arg for arg in self.argv)


@dataclass
class ExportOutcome:
    job: ExportJob
    returncode: Optional[int]
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.returncode == 0

    @property
    def duration(self) -> float:
        return (self.finished_at or 0.0) - (self.started_at or 0.0)


def object_id_query(object_id: str) -> str:
    """Extended JSON query selecting a document by ObjectId."""
    return json.dumps({'_id': {'$oid': object_id}})


class MongoSource:
    """Builds mongodump/mongoexport invocations against one database."""

    def __init__(self, credentials: MongoCredentials, host: Optional[str] = None):
        self.host = host or credentials.host
        self.db_name = credentials.db_name
        self.user = credentials.user
        self.password = credentials.password

    @property
    def secrets(self) -> tuple:
        return tuple(s for s in (self.password,) if s)

    def _connection_args(self) -> List[str]:
        args = ['--host', self.host, '--db', self.db_name]
        if self.user:
            args += ['--username', self.user]
        if self.password:
            args += ['--password', self.password]
        return args

    def dump_args(self, out_dir: str, collection: Optional[str] = None, query: Optional[str] = None) -> List[str]:
        args = ['mongodump'] + self._connection_args()
        if collection:
            args += ['--collection', collection]
        if query:
            args += ['--query', query]
        return args + ['--out', out_dir]

    def export_args(
        self,
        collection: str,
        out_file: str,
        fields: Optional[Sequence[str]] = None,
        query: Optional[str] = None
    ) -> List[str]:
        args = ['mongoexport'] + self._connection_args() + ['--collection', collection]
        if fields:
            args += ['--fields', ','.join(fields)]
        if query:
            args += ['--query', query]
        return args + ['--out', out_file]

    def dump_job(self, name: str, out_dir: str, collection: Optional[str] = None,
                 query: Optional[str] = None) -> ExportJob:
        return ExportJob(name, self.dump_args(out_dir, collection, query), out_dir, self.secrets)

    def export_job(self, name: str, collection: str, out_file: str,
                   fields: Optional[Sequence[str]] = None, query: Optional[str] = None) -> ExportJob:
        return ExportJob(name, self.export_args(collection, out_file, fields, query), out_file, self.secrets)


def standalone_dump_job(database: StandaloneDatabase, out_dir: str) -> ExportJob:
    argv = [
        'mongodump',
        '--excludeCollectionsWithPrefix=system',
        '--host', f"{database.host}:{database.port}",
        '--db', database.database,
        '-u', database.username,
        '-p', database.password,
        '--out', out_dir
    ]
    return ExportJob(database.name, argv, out_dir, (database.password,))


class ExportCoordinator:
    """
    Runs batches of export jobs concurrently behind a join barrier.

    A failing job does not cancel its siblings; failures are collected and
    raised together once every job of the batch has finished.
    """

    def __init__(
        self,
        stagger: float = 1.0,
        timeout: Optional[float] = None,
        runner: Callable = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: Optional[int] = None
    ):
        """
        Args:
            stagger: Seconds to wait between starting consecutive jobs
            timeout: Per-job timeout in seconds; a job exceeding it fails
            runner: subprocess.run compatible callable
            sleep: time.sleep compatible callable
            max_workers: Pool size (default: one thread per job)
        """
        self.stagger = stagger
        self.timeout = timeout
        self.runner = runner
        self.sleep = sleep
        self.max_workers = max_workers

    def run(self, jobs: Sequence[ExportJob]) -> List[ExportOutcome]:
        """
        Run every job and wait for all of them.

        Returns:
            Outcomes in job order

        Raises:
            ExportError: If any job failed
        """
        if not jobs:
            return []

        with ThreadPoolExecutor(max_workers=self.max_workers or len(jobs),
                                thread_name_prefix='export') as pool:
            futures = []
            for index, job in enumerate(jobs):
                if index and self.stagger:
                    self.sleep(self.stagger)
                logger.info(f"Starting export {job.name}: {job.display_command()}")
                futures.append(pool.submit(self._run_job, job))

            wait(futures)

        outcomes = [future.result() for future in futures]
        for outcome in outcomes:
            if outcome.succeeded:
                logger.info(f"Export {outcome.job.name} finished in {outcome.duration:.1f}s: {outcome.job.output_path}")
        failures = [o for o in outcomes if not o.succeeded]
        for failure in failures:
            logger.error(f"Export {failure.job.name} failed: {failure.error}")

        if failures:
            raise ExportError(failures)

        return outcomes

    def _run_job(self, job: ExportJob) -> ExportOutcome:
        started = time.monotonic()
        try:
            result = self.runner(
                job.argv,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            return ExportOutcome(job, None, f"timed out after {self.timeout} seconds",
                                 started, time.monotonic())
        except OSError as e:
            return ExportOutcome(job, None, f"could not start {job.argv[0]}: {e}",
                                 started, time.monotonic())

        if result.stderr:
            logger.debug(f"{job.name} stderr: {_mask(result.stderr.strip(), job.secrets)}")

        error = None
        if result.returncode != 0:
            error = f"exited with code {result.returncode}: {_mask((result.stderr or '').strip(), job.secrets)}"

        return ExportOutcome(job, result.returncode, error, started, time.monotonic())


def _mask(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, '****')
    return text
