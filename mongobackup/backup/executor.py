"""
Backup run orchestration.

Workflow (each phase finishes before the next starts):
1. Select a secondary replica
2. Enumerate projects from the source database
3. Standalone database backups
4. Sanitized project exports
5. Full project exports
6. Complete database dump with complete, filtered and talk only archives
7. Notification mail
8. Cleanup of the working directory
"""

import os
import shutil
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

import inflection

from mongobackup.config import BackupConfig, ConfigError, StandaloneDatabase
from mongobackup.models import ArchiveVariant, Project, RunContext, RunResult
from .compression import build_variant, flatten_dump, purge_directory
from .exports import ExportCoordinator, MongoSource, object_id_query, standalone_dump_job
from .notify import Mailer, MailError
from .replica import ReplicaSelector, enumerate_projects
from .storage import S3Storage, Uploader


logger = logging.getLogger(__name__)


# Fields shared in sanitized exports. These lists decide what leaves the
# organisation; extend them only deliberately.
SANITIZED_SUBJECT_FIELDS = (
    'activated_at', 'classification_count', 'coords', 'created_at', 'group', 'group_id',
    'location', 'metadata', 'project_id', 'random', 'state', 'updated_at', 'workflow_ids',
    'zooniverse_id'
)
SANITIZED_CLASSIFICATION_FIELDS = (
    'annotations', 'created_at', 'project_id', 'subject_ids', 'subjects', 'tutorial',
    'updated_at', 'user_id', 'user_name', 'workflow_id'
)
SANITIZED_GROUP_FIELDS = (
    'categories', 'classification_count', 'created_at', 'metadata', 'name', 'project_id',
    'project_name', 'random', 'state', 'stats', 'subjects', 'updated_at', 'zooniverse_id'
)

# Collections left out of the filtered archive
FILTERED_EXCLUDES = (
    '_cache',
    'administrations',
    'administrators',
    'data_requests',
    'jobs',
    'messages',
    'classifications',
    'groups',
    'manifest_entries',
    'manifests',
    'moderations',
    'project_statuses',
    'subjects',
    'translations',
    'user_extra_infos',
    'users'
)

# Collections making up the talk only archive
TALK_INCLUDES = ('boards', 'discussions', 'projects', 'subject_sets')

# Cache collections never make it into any archive of the complete dump
DUMP_SKIP_PATTERNS = ('_cache',)


class BackupRun:
    """
    Orchestrates one complete backup run.
    """

    def __init__(
        self,
        config: BackupConfig,
        output_dir: str,
        storage: S3Storage,
        mailer: Mailer,
        selector: Optional[ReplicaSelector] = None,
        coordinator: Optional[ExportCoordinator] = None,
        enumerator: Callable[..., List[Project]] = enumerate_projects,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize backup run.

        Args:
            config: Parsed run configuration
            output_dir: Working directory, emptied when the run ends
            storage: S3 storage handler
            mailer: SMTP mailer
            selector: Replica selector (default: built from config)
            coordinator: Export coordinator (default: built from config)
            enumerator: Callable returning the source database's projects
            clock: Source of the run timestamp
        """
        self.config = config
        self.storage = storage
        self.mailer = mailer
        self.selector = selector or ReplicaSelector(
            config.hosts, config.admin_user, config.admin_password
        )
        self.coordinator = coordinator or ExportCoordinator(
            stagger=config.export_stagger_seconds,
            timeout=config.export_timeout_seconds
        )
        self.enumerator = enumerator
        self.context = RunContext.create(output_dir, config.source.db_name, clock)
        self.uploader = Uploader(storage, self.context)
        self.result = RunResult()
        self.workspace_created = False

    @property
    def registry(self):
        return self.context.registry

    @property
    def timestamp(self) -> str:
        return self.context.timestamp

    def execute(self) -> RunResult:
        """
        Execute the backup run.

        Returns:
            RunResult with status, artifacts and logs. Failures are recorded
            on the result rather than raised.
        """
        self.result.started_at = datetime.utcnow()
        self._log(f"Starting backup run {self.timestamp}")

        try:
            self._execute_workflow()

            self.result.status = 'success'
            self._log("Backup complete")

        except Exception as e:
            self.result.status = 'failed'
            self.result.error_message = str(e)
            logger.exception("Backup run failed")
            self._log(f"Backup failed: {e}")

        finally:
            if self.workspace_created:
                self._cleanup()
            self.result.artifacts = list(self.uploader.uploaded)
            self.result.completed_at = datetime.utcnow()

        return self.result

    def _execute_workflow(self):
        """Execute the backup phases in order."""
        self._log("* Selecting secondary replica")
        self.context.replica_host = self.selector.select()

        self._create_workspace()

        self._log("* Enumerating projects")
        self._enumerate_projects()

        self._log("* Starting standalone backups")
        for database in self.config.standalone_projects:
            self._backup_standalone(database)

        self._log("* Starting sanitized backups")
        for project_id, recipients in self.config.sanitized_projects.items():
            self._backup_sanitized(self.registry.get(project_id), recipients)
        purge_directory(self.context.project_dumps_dir)

        if self.config.project_exports:
            self._log("* Starting project backups")
            for project in self.registry:
                self._backup_project(project)
            purge_directory(self.context.project_dumps_dir)

        self._log(f"* Starting complete {self.context.db_name} backup")
        run_lines = self._backup_complete_database()

        self._log("* Sending notification emails")
        self._send_notifications(run_lines)

    def _create_workspace(self):
        self.workspace_created = True
        for directory in (self.context.projects_backup_dir,
                          self.context.standalone_backup_dir,
                          self.context.project_dumps_dir,
                          self.context.standalone_dumps_dir):
            os.makedirs(directory, exist_ok=True)

    def _enumerate_projects(self):
        projects = self.enumerator(
            self.config.hosts,
            self.config.rs_name,
            self.config.source.db_name,
            self.config.source.user,
            self.config.source.password,
            self.timestamp
        )
        for project in projects:
            self.registry.add(project)

        missing = [p for p in self.config.sanitized_projects if p not in self.registry]
        if missing:
            raise ConfigError(f"Sanitized projects not found in {self.context.db_name}: {', '.join(missing)}")

        self._log(f"Found {len(self.registry)} projects")

    def _source_for(self, project: Project) -> MongoSource:
        credentials = self.config.source_for(project.id)
        if credentials is self.config.source:
            return MongoSource(credentials, host=self.context.replica_host)
        return MongoSource(credentials)

    def _backup_standalone(self, database: StandaloneDatabase):
        """Dump a standalone database, archive it and mail its recipients."""
        name = database.name
        self._log(f"    * Backing up {name}")

        dump_dir = os.path.join(self.context.standalone_dumps_dir, name)
        os.makedirs(dump_dir, exist_ok=True)

        self.coordinator.run([standalone_dump_job(database, dump_dir)])

        build_variant(ArchiveVariant('standalone', dump_dir, name), self.context.standalone_backup_dir)
        path = f"standalone_projects/{name}.tar.gz"
        line = self.uploader.upload(inflection.titleize(name), path, self.context.backup_path(path))

        # Recipients only get the sanitized archive when one is configured
        if database.sanitized_excludes:
            sanitized_name = f"{name}_sanitized"
            build_variant(
                ArchiveVariant('sanitized', dump_dir, sanitized_name, excludes=database.sanitized_excludes),
                self.context.standalone_backup_dir
            )
            path = f"standalone_projects/{sanitized_name}.tar.gz"
            line = self.uploader.upload(inflection.titleize(name), path, self.context.backup_path(path))

        shutil.rmtree(dump_dir)

        self._mail(
            self.config.notifications.sender,
            database.email_recipients + self.config.notifications.operators,
            f"{name} MongoDB Backup {self.timestamp}",
            line
        )

    def _backup_sanitized(self, project: Project, recipients: List[str]):
        """Export allowlisted fields of a project's collections and mail the link."""
        self._log(f"    * Backing up {project.name}")

        source = self._source_for(project)
        output = f"sanitized_{project.output}"
        work_dir = os.path.join(self.context.project_dumps_dir, output)
        os.makedirs(work_dir, exist_ok=True)

        self.coordinator.run([
            source.export_job(project.classifications, project.classifications,
                              os.path.join(work_dir, f"{project.classifications}.json"),
                              fields=SANITIZED_CLASSIFICATION_FIELDS),
            source.export_job(project.subjects, project.subjects,
                              os.path.join(work_dir, f"{project.subjects}.json"),
                              fields=SANITIZED_SUBJECT_FIELDS),
            source.export_job(project.groups, project.groups,
                              os.path.join(work_dir, f"{project.groups}.json"),
                              fields=SANITIZED_GROUP_FIELDS),
            source.export_job('projects', 'projects',
                              os.path.join(work_dir, 'projects.json'),
                              query=object_id_query(project.id))
        ])

        build_variant(ArchiveVariant('sanitized', work_dir, output), self.context.projects_backup_dir)
        shutil.rmtree(work_dir)

        path = f"{self.context.projects_path}/{output}.tar.gz"
        self.uploader.upload(project.title, path, self.context.backup_path(path), project.id)

        self._mail(
            self.config.notifications.sender,
            recipients,
            f"Sanitized {project.name} MongoDB Backup {self.timestamp}",
            self.registry.pop_email_line(project.id),
            cc=self.config.notifications.operators
        )

    def _backup_project(self, project: Project):
        """Dump a project's collections at full fidelity."""
        self._log(f"    * Backing up {project.name}")

        source = self._source_for(project)
        work_dir = os.path.join(self.context.project_dumps_dir, project.output)
        os.makedirs(work_dir, exist_ok=True)

        self.coordinator.run([
            source.dump_job(project.classifications, work_dir, collection=project.classifications),
            source.dump_job(project.subjects, work_dir, collection=project.subjects),
            source.dump_job(project.groups, work_dir, collection=project.groups),
            source.dump_job('projects', work_dir, collection='projects',
                            query=object_id_query(project.id))
        ])

        flatten_dump(work_dir)
        build_variant(ArchiveVariant('project', work_dir, project.output), self.context.projects_backup_dir)
        shutil.rmtree(work_dir)

        path = f"{self.context.projects_path}/{project.output}.tar.gz"
        self.uploader.upload(project.title, path, self.context.backup_path(path), project.id)

    def _backup_complete_database(self) -> Dict[str, str]:
        """
        Dump the whole source database and upload the archive variants.

        Returns:
            Manifest lines keyed by variant kind
        """
        context = self.context
        source = MongoSource(self.config.source, host=context.replica_host)

        self.coordinator.run([source.dump_job(context.db_name, context.dump_dir)])
        flatten_dump(context.dump_dir, DUMP_SKIP_PATTERNS)

        variants = [
            ArchiveVariant('complete', context.dump_dir, context.dump_name),
            ArchiveVariant('filtered', context.dump_dir, f"{context.dump_name}_filtered",
                           excludes=FILTERED_EXCLUDES),
            ArchiveVariant('talk_only', context.dump_dir, f"{context.dump_name}_talk_only",
                           includes=TALK_INCLUDES)
        ]
        for variant in variants:
            build_variant(variant, context.backups_dir)
        shutil.rmtree(context.dump_dir)

        if self.config.staging:
            staging = MongoSource(self.config.staging)
            staging_dir = os.path.join(context.output_dir, context.staging_dump_name)
            self.coordinator.run([staging.dump_job('staging', staging_dir)])
            variants.append(ArchiveVariant('staging', staging_dir, context.staging_dump_name))
            build_variant(variants[-1], context.backups_dir)
            shutil.rmtree(staging_dir)

        title = inflection.titleize(context.db_name)
        display_names = {
            'complete': title,
            'filtered': f"Filtered {title}",
            'talk_only': 'Talk only',
            'staging': 'Staging'
        }

        lines = {}
        for variant in variants:
            self._log(f"    * Uploading {variant.kind} backup")
            filename = os.path.basename(variant.archive_path)
            lines[variant.kind] = self.uploader.upload(display_names[variant.kind], filename, variant.archive_path)

        return lines

    def _send_notifications(self, run_lines: Dict[str, str]):
        """
        Send the operator manifest and the externally shareable manifest.

        Only the filtered and talk only links leave the operator list.
        """
        title = inflection.titleize(self.context.db_name)
        header = f"{title} Backup {self.timestamp}: 1 complete backup."
        subject = f"{title} MongoDB Backup {self.timestamp}"
        notifications = self.config.notifications

        operator_lines = [header] + [run_lines[k] for k in ('complete', 'filtered', 'talk_only', 'staging')
                                     if k in run_lines]
        operator_lines += self.registry.email_lines()

        self._mail(notifications.noreply, notifications.operators, subject, '\n\n'.join(operator_lines))

        external_lines = [header, run_lines['filtered'], run_lines['talk_only']]
        self._mail(
            notifications.sender,
            notifications.operators + self.config.filtered_recipients,
            subject,
            '\n\n'.join(external_lines)
        )

    def _mail(self, sender: str, to: List[str], subject: str, body: Optional[str],
              cc: Optional[List[str]] = None):
        """Send a notification; delivery failures are recorded, not raised."""
        try:
            self.mailer.send(sender, to, subject, body or '', cc=cc)
        except MailError as e:
            logger.error(f"NOTIFICATION NOT DELIVERED: {e}")
            self.result.mail_failures.append(str(e))
            self._log(f"Warning: {e}")

    def _cleanup(self):
        """Remove everything the run wrote under the output directory."""
        try:
            purge_directory(self.context.output_dir)
            self._log("* Cleaned up working directory")
        except OSError as e:
            logger.error(f"Failed to clean up {self.context.output_dir}: {e}")
            self._log(f"Cleanup failed: {e}")
            if self.result.status == 'success':
                self.result.status = 'failed'
                self.result.error_message = f"Cleanup failed: {e}"

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
