"""
LabOps Reconciliation Service
Project hierarchy models.

Models:
    - Project: root of the task hierarchy, caches the rolled-up progress
    - Workpackage: one row per workpackage; the Task → Subtask → Todo
      subtree lives in the ``tasks`` JSON document and is rewritten as a
      whole, guarded by the ``version`` stamp

Architecture chain: Project → Workpackage → Task → Subtask → Todo
"""

import uuid
from datetime import datetime, timezone

from labops.models import db


# ── Constants ────────────────────────────────────────────────────────────────

WORK_STATUSES = {"not-started", "in-progress", "at-risk", "blocked", "done"}

# Older documents and some clients still send these spellings.
WORK_STATUS_ALIASES = {
    "working": "in-progress",
    "in_progress": "in-progress",
    "not_started": "not-started",
    "at_risk": "at-risk",
    "completed": "done",
}

IMPORTANCE_LEVELS = {"low", "medium", "high", "critical"}

WORKPACKAGE_STATUSES = {"planning", "active", "atRisk", "completed", "onHold"}

PROJECT_STATUSES = {"planning", "active", "completed", "on-hold", "cancelled"}


def normalize_work_status(status: str | None) -> str:
    """Map a task/subtask status onto ``WORK_STATUSES`` (default not-started)."""
    if not status:
        return "not-started"
    status = WORK_STATUS_ALIASES.get(status, status)
    return status if status in WORK_STATUSES else "not-started"


def new_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECT
# ═══════════════════════════════════════════════════════════════════════════

class Project(db.Model):
    """
    A master project. ``progress`` is the roll-up over its workpackages and
    is rewritten in the same commit as any workpackage change.
    """

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="planning", index=True)
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0-100, rolled up")
    team_member_ids = db.Column(db.JSON, nullable=False, default=list)
    total_budget = db.Column(db.Float, nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="EUR")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    workpackages = db.relationship(
        "Workpackage", back_populates="project",
        order_by="Workpackage.position", cascade="all, delete-orphan",
    )

    @property
    def workpackage_ids(self) -> list[str]:
        return [wp.id for wp in self.workpackages]

    def to_dict(self, include_workpackages=False):
        result = {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "workpackage_ids": self.workpackage_ids,
            "team_member_ids": list(self.team_member_ids or []),
            "total_budget": self.total_budget,
            "currency": self.currency,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_workpackages:
            result["workpackages"] = [wp.to_dict() for wp in self.workpackages]
        return result

    def __repr__(self):
        return f"<Project {self.id}: {self.name[:40]}>"


# ═══════════════════════════════════════════════════════════════════════════
#  WORKPACKAGE
# ═══════════════════════════════════════════════════════════════════════════

class Workpackage(db.Model):
    """
    A workpackage and its embedded task subtree.

    ``version`` is SQLAlchemy's optimistic-concurrency counter: every UPDATE
    is issued as ``... WHERE id = :id AND version = :loaded_version`` so two
    writers racing on the same document cannot silently overwrite each other.
    """

    __tablename__ = "workpackages"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="planning")
    importance = db.Column(db.String(20), nullable=False, default="medium")
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0-100, rolled up")
    owner_id = db.Column(db.String(36), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    tasks = db.Column(db.JSON, nullable=False, default=list, comment="Task → Subtask → Todo document")
    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project", back_populates="workpackages")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "status": self.status,
            "importance": self.importance,
            "progress": self.progress,
            "owner_id": self.owner_id,
            "start": self.start_date.isoformat() if self.start_date else None,
            "end": self.end_date.isoformat() if self.end_date else None,
            "tasks": list(self.tasks or []),
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Workpackage {self.id}: {self.name[:40]} ({self.progress}%)>"
