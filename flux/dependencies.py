"""Dependency tracking and board cleanup for Flux projects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import ValidationError
from .flux_logging import log_performance
from .models import Task
from .store import FluxStore, synchronized

logger = logging.getLogger("flux.dependencies")


@dataclass(slots=True)
class CleanupResult:
    archived_tasks: int = 0
    deleted_epics: int = 0
    archived: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {"archivedTasks": self.archived_tasks, "deletedEpics": self.deleted_epics}


class DependencyEngine:
    """Derives blocked state from ``depends_on`` and runs archive sweeps.

    Blocked state is computed on every read and never stored. A dependency
    id that no longer resolves is ignored rather than treated as blocking.
    """

    def __init__(self, store: FluxStore):
        self.store = store

    # ------------------------------------------------------------------
    # Blocked state
    # ------------------------------------------------------------------

    def blocking_tasks(self, task_id: str) -> List[Task]:
        task = self.store.get_task(task_id)
        if task is None or not task.depends_on:
            return []
        blocking = []
        for dep_id in task.depends_on:
            dep = self.store.get_task(dep_id)
            if dep is not None and not dep.is_done():
                blocking.append(dep)
        return blocking

    def is_blocked(self, task_id: str) -> bool:
        return bool(self.blocking_tasks(task_id))

    def is_epic_blocked(self, epic_id: str) -> bool:
        epic = self.store.get_epic(epic_id)
        if epic is None:
            return False
        for dep_id in epic.depends_on:
            dep = self.store.get_epic(dep_id)
            if dep is not None and dep.status != "done":
                return True
        return False

    # ------------------------------------------------------------------
    # Dependency edits
    # ------------------------------------------------------------------

    @synchronized
    def add_dependency(self, task_id: str, depends_on_id: str) -> bool:
        """Make ``task_id`` depend on ``depends_on_id``. Adding an existing edge is a no-op."""
        task = self.store.get_task(task_id)
        if task is None:
            return False
        if depends_on_id == task_id:
            raise ValidationError("A task cannot depend on itself")
        if depends_on_id in task.depends_on:
            return True
        with self.store.transaction("add_dependency", "tasks"):
            task.depends_on.append(depends_on_id)
            self.store.mark_changed()
        return True

    @synchronized
    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        task = self.store.get_task(task_id)
        if task is None or depends_on_id not in task.depends_on:
            return False
        with self.store.transaction("remove_dependency", "tasks"):
            task.depends_on.remove(depends_on_id)
            self.store.mark_changed()
        return True

    # ------------------------------------------------------------------
    # Archive sweeps
    # ------------------------------------------------------------------

    @synchronized
    def archive_done_tasks(self, project_id: str) -> int:
        """Archive every finished, unarchived task in the project; return the count."""
        return len(self._archive_done(project_id))

    def _archive_done(self, project_id: str) -> List[Task]:
        candidates = [
            t for t in self.store.data.tasks
            if t.project_id == project_id and t.is_done() and not t.archived
        ]
        if candidates:
            with self.store.transaction("archive_done_tasks", "tasks"):
                for task in candidates:
                    task.archived = True
                self.store.mark_changed()
            logger.info(f"Archived {len(candidates)} done task(s) in project {project_id}")
        return candidates

    @synchronized
    def archive_empty_epics(self, project_id: str) -> int:
        """Hard-delete epics in the project that have no unarchived tasks."""
        active_epic_ids = {t.epic_id for t in self.store.data.tasks if t.epic_id and not t.archived}
        doomed = {
            e.id for e in self.store.data.epics
            if e.project_id == project_id and e.id not in active_epic_ids
        }
        if doomed:
            with self.store.transaction("archive_empty_epics", "epics"):
                self.store.data.epics = [e for e in self.store.data.epics if e.id not in doomed]
                self.store.mark_changed()
            logger.info(f"Deleted {len(doomed)} empty epic(s) in project {project_id}")
        return len(doomed)

    @log_performance("cleanup_project")
    @synchronized
    def cleanup_project(self, project_id: str, archive_tasks: bool = True, archive_epics: bool = True) -> CleanupResult:
        """Run the requested sweeps. Each sweep commits on its own."""
        result = CleanupResult()
        if archive_tasks:
            result.archived = self._archive_done(project_id)
            result.archived_tasks = len(result.archived)
        if archive_epics:
            result.deleted_epics = self.archive_empty_epics(project_id)
        return result

    def task_view(self, task: Optional[Task]) -> Optional[Dict]:
        """Task as a dict with its derived ``blocked`` flag."""
        if task is None:
            return None
        return {**task.to_dict(), "blocked": self.is_blocked(task.id)}
