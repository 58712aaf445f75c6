"""
Run-scoped data model: projects, the shared project registry, the run
context and archive variants.
"""

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatch
from typing import Dict, Iterator, List, Optional, Tuple

import inflection


def slugify(name: str) -> str:
    """Filesystem-safe form of a display name ("Galaxy Zoo" -> "galaxy_zoo")."""
    return inflection.parameterize(name, separator='_')


@dataclass
class Project:
    """
    One logical data partition of the source database.

    Collection names follow the tableize convention of the application that
    owns the data, so "galaxy_zoo" maps to "galaxy_zoo_subjects" and so on.
    """
    id: str
    name: str
    timestamp: str
    email_line: Optional[str] = None

    @property
    def output(self) -> str:
        return f"{slugify(self.name)}_{self.timestamp}"

    @property
    def title(self) -> str:
        return inflection.titleize(self.name)

    @property
    def subjects(self) -> str:
        return inflection.tableize(f"{self.name}_subject")

    @property
    def groups(self) -> str:
        return inflection.tableize(f"{self.name}_group")

    @property
    def classifications(self) -> str:
        return inflection.tableize(f"{self.name}_classification")


class ProjectRegistry:
    """
    Map of project id to Project shared by concurrent upload calls.

    Every mutation goes through the lock. Reads of email_line are only
    meaningful once the phase that wrote them has joined.
    """

    def __init__(self, lock: Optional[threading.Lock] = None):
        self._projects: Dict[str, Project] = {}
        self._lock = lock or threading.Lock()

    def add(self, project: Project) -> Project:
        with self._lock:
            if project.id in self._projects:
                raise ValueError(f"Duplicate project id: {project.id}")
            for existing in self._projects.values():
                if existing.output == project.output:
                    raise ValueError(
                        f"Projects {existing.id} and {project.id} share the output name {project.output}"
                    )
            self._projects[project.id] = project
        return project

    def get(self, project_id: str) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise KeyError(f"Unknown project: {project_id}")

    def set_email_line(self, project_id: str, line: str):
        with self._lock:
            self.get(project_id).email_line = line

    def pop_email_line(self, project_id: str) -> Optional[str]:
        with self._lock:
            project = self.get(project_id)
            line, project.email_line = project.email_line, None
            return line

    def email_lines(self) -> List[str]:
        with self._lock:
            return [p.email_line for p in self._projects.values() if p.email_line]

    def __iter__(self) -> Iterator[Project]:
        with self._lock:
            projects = list(self._projects.values())
        return iter(projects)

    def __contains__(self, project_id: str) -> bool:
        return project_id in self._projects

    def __len__(self) -> int:
        return len(self._projects)


@dataclass
class RunContext:
    """
    State owned by a single run.

    The timestamp is computed once so every path and filename built during
    the run agrees on it, even when the run crosses midnight.
    """
    output_dir: str
    timestamp: str
    db_name: str
    replica_host: Optional[str] = None
    registry: ProjectRegistry = field(default_factory=ProjectRegistry)

    @classmethod
    def create(cls, output_dir: str, db_name: str, clock=datetime.now) -> 'RunContext':
        return cls(
            output_dir=output_dir,
            timestamp=clock().strftime('%Y-%m-%d'),
            db_name=db_name
        )

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.output_dir, 'backups')

    @property
    def projects_path(self) -> str:
        """Relative directory (under backups/ and in S3) for per-project archives."""
        return f"{self.db_name}_projects"

    @property
    def projects_backup_dir(self) -> str:
        return os.path.join(self.backups_dir, self.projects_path)

    @property
    def standalone_backup_dir(self) -> str:
        return os.path.join(self.backups_dir, 'standalone_projects')

    @property
    def project_dumps_dir(self) -> str:
        return os.path.join(self.output_dir, 'project_dumps')

    @property
    def standalone_dumps_dir(self) -> str:
        return os.path.join(self.output_dir, 'standalone_dumps')

    @property
    def dump_name(self) -> str:
        return f"{self.db_name}_{self.timestamp}"

    @property
    def dump_dir(self) -> str:
        return os.path.join(self.output_dir, self.dump_name)

    @property
    def staging_dump_name(self) -> str:
        return f"{self.db_name}_staging_{self.timestamp}"

    def backup_path(self, relative_path: str) -> str:
        return os.path.join(self.backups_dir, relative_path)


@dataclass
class ArchiveVariant:
    """
    An archive built from a working directory.

    excludes drop every file named "{name}.*"; includes keep only those
    files. Both match on the file's basename.
    """
    kind: str
    source_dir: str
    archive_name: str
    excludes: Tuple[str, ...] = ()
    includes: Tuple[str, ...] = ()
    archive_path: Optional[str] = None

    KINDS = ('complete', 'filtered', 'talk_only', 'sanitized', 'standalone', 'project', 'staging')

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise ValueError(f"Invalid archive kind: {self.kind}. Valid options: {list(self.KINDS)}")
        self.excludes = tuple(self.excludes)
        self.includes = tuple(self.includes)

    def selects(self, relative_path: str) -> bool:
        """Return True if the file belongs in this archive."""
        basename = os.path.basename(relative_path)
        if self.includes and not any(fnmatch(basename, f"{n}.*") for n in self.includes):
            return False
        return not any(fnmatch(basename, f"{n}.*") for n in self.excludes)


@dataclass
class RunResult:
    """Outcome of one run, kept alongside its log lines."""
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    mail_failures: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'
