"""Immutable in-memory snapshots of the project hierarchy.

The recalculation engine never touches ORM rows: it reads a snapshot, builds
a new one and hands it back to the persistence layer. Sequences are tuples
and sets are frozensets so a snapshot cannot be mutated in place.

``from_dict`` / ``to_dict`` convert to and from the JSON document stored in
``Workpackage.tasks``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from labops.core.exceptions import ValidationError
from labops.models.project import normalize_work_status
from labops.services.progress import clamp_progress, parse_weight


def _require_id(data: Mapping[str, Any], resource: str) -> str:
    value = data.get("id")
    if value is None or value == "":
        raise ValidationError(f"{resource} id is required", details={"resource": resource})
    return str(value)


@dataclass(frozen=True)
class Todo:
    id: str
    text: str = ""
    done: bool = False
    created_at: str | None = None
    completed_at: str | None = None
    order: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Todo:
        done = data.get("done")
        if done is None:
            done = data.get("completed", False)
        return cls(
            id=_require_id(data, cls.__name__),
            text=data.get("text", ""),
            done=bool(done),
            created_at=data.get("created_at"),
            completed_at=data.get("completed_at"),
            order=int(data.get("order") or 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "done": self.done,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "order": self.order,
        }


@dataclass(frozen=True)
class Subtask:
    id: str
    name: str = ""
    status: str = "not-started"
    progress: int = 0
    todos: tuple[Todo, ...] = ()
    owner_id: str | None = None
    notes: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Subtask:
        return cls(
            id=_require_id(data, cls.__name__),
            name=data.get("name", ""),
            status=normalize_work_status(data.get("status")),
            progress=clamp_progress(data.get("progress")),
            todos=tuple(Todo.from_dict(t) for t in data.get("todos") or ()),
            owner_id=data.get("owner_id"),
            notes=data.get("notes", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "todos": [t.to_dict() for t in self.todos],
            "owner_id": self.owner_id,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class Task:
    id: str
    name: str = ""
    status: str = "not-started"
    importance: str = "medium"
    progress: int = 0
    subtasks: tuple[Subtask, ...] = ()
    helpers: frozenset[str] = frozenset()
    primary_owner: str | None = None
    deliverables: tuple[str, ...] = ()
    start: str | None = None
    end: str | None = None
    weight: float = 1.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        return cls(
            id=_require_id(data, cls.__name__),
            name=data.get("name", ""),
            status=normalize_work_status(data.get("status")),
            importance=data.get("importance") or "medium",
            progress=clamp_progress(data.get("progress")),
            subtasks=tuple(Subtask.from_dict(s) for s in data.get("subtasks") or ()),
            helpers=frozenset(data.get("helpers") or ()),
            primary_owner=data.get("primary_owner"),
            deliverables=tuple(str(d) for d in data.get("deliverables") or ()),
            start=data.get("start"),
            end=data.get("end"),
            weight=parse_weight(data.get("weight")),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "importance": self.importance,
            "progress": self.progress,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "helpers": sorted(self.helpers),
            "primary_owner": self.primary_owner,
            "deliverables": list(self.deliverables),
            "start": self.start,
            "end": self.end,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class Workpackage:
    id: str
    project_id: str | None = None
    name: str = ""
    status: str = "planning"
    progress: int = 0
    tasks: tuple[Task, ...] = ()
    owner_id: str | None = None
    start: str | None = None
    end: str | None = None
    version: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Workpackage:
        return cls(
            id=_require_id(data, cls.__name__),
            project_id=data.get("project_id"),
            name=data.get("name", ""),
            status=data.get("status") or "planning",
            progress=clamp_progress(data.get("progress")),
            tasks=tasks_from_document(data.get("tasks") or ()),
            owner_id=data.get("owner_id"),
            start=data.get("start"),
            end=data.get("end"),
            version=data.get("version"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "tasks": tasks_to_document(self.tasks),
            "owner_id": self.owner_id,
            "start": self.start,
            "end": self.end,
            "version": self.version,
        }


@dataclass(frozen=True)
class ProjectTree:
    """A project together with the workpackages loaded for it."""

    id: str
    name: str = ""
    status: str = "planning"
    progress: int = 0
    workpackages: tuple[Workpackage, ...] = ()
    team_member_ids: tuple[str, ...] = ()
    total_budget: float | None = None
    currency: str = "EUR"

    @property
    def workpackage_ids(self) -> frozenset[str]:
        return frozenset(wp.id for wp in self.workpackages)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "workpackage_ids": sorted(self.workpackage_ids),
            "workpackages": [wp.to_dict() for wp in self.workpackages],
            "team_member_ids": list(self.team_member_ids),
            "total_budget": self.total_budget,
            "currency": self.currency,
        }


def tasks_from_document(document: Iterable[Mapping[str, Any]]) -> tuple[Task, ...]:
    return tuple(Task.from_dict(t) for t in document)


def tasks_to_document(tasks: Iterable[Task]) -> list[dict]:
    return [t.to_dict() for t in tasks]
