"""
tests/test_task_tree.py — pure task-tree recalculation.

Covers: roll-up through subtask → task → workpackage → project, toggle
        idempotence, add/delete, zero-subtask tasks, status policies,
        NotFoundError on unknown ids, input immutability, project stats.
"""

from datetime import datetime, timezone

import pytest

from labops.core.exceptions import NotFoundError, ValidationError
from labops.services.snapshots import ProjectTree, Subtask, Task, Todo, Workpackage, tasks_from_document
from labops.services.task_tree import (
    StatusPolicy,
    add_todo,
    add_todo_to_workpackage,
    apply_status_policy,
    delete_todo,
    delete_todo_from_workpackage,
    project_stats,
    recalculate_subtask,
    recalculate_task,
    toggle_todo,
    toggle_todo_in_workpackage,
)
from labops.services.rollup import recompute_project, recompute_workpackage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _wp(tree_document, wp_id="wp1", project_id="p1", **kw):
    wp = Workpackage(id=wp_id, project_id=project_id, name="Structure", tasks=tasks_from_document(tree_document), **kw)
    return recompute_workpackage(wp)


def _project(*workpackages):
    return ProjectTree(id="p1", name="Cryo-EM", workpackages=tuple(workpackages))


def _progress_map(project):
    """Every progress value in the tree keyed by node path."""
    values = {"project": project.progress}
    for wp in project.workpackages:
        values[wp.id] = wp.progress
        for task in wp.tasks:
            values[f"{wp.id}/{task.id}"] = task.progress
            for sub in task.subtasks:
                values[f"{wp.id}/{task.id}/{sub.id}"] = sub.progress
    return values


class TestRollUp:
    def test_worked_example(self, tree_document):
        wp = _wp(tree_document)
        t1, t2 = wp.tasks
        assert [s.progress for s in t1.subtasks] == [25, 75]
        assert t1.progress == 50
        assert t2.progress == 100
        assert wp.progress == 75

    def test_toggle_recomputes_every_ancestor(self, tree_document):
        project = _project(_wp(tree_document))
        # s1: 2 of 4 done → 50; t1: (50 + 75) / 2 = 62.5 → 63; wp: (63 + 100) / 2 = 81.5 → 82
        updated = toggle_todo(project, "wp1", "t1", "s1", "s1-td1", now=NOW)

        wp = updated.workpackages[0]
        s1 = wp.tasks[0].subtasks[0]
        assert s1.progress == 50
        assert wp.tasks[0].progress == 63
        assert wp.progress == 82
        assert updated.progress == 82

    def test_project_mean_over_workpackages(self, tree_document):
        wp1 = _wp(tree_document)
        wp2 = Workpackage(id="wp2", project_id="p1", name="Empty")
        project = toggle_todo(_project(wp1, wp2), "wp1", "t1", "s1", "s1-td0")
        # s1 → 0, t1 → (0+75)/2 = 37.5 → 38, wp1 → (38+100)/2 = 69, project → (69+0)/2 = 34.5 → 35
        assert project.workpackages[0].progress == 69
        assert project.progress == 35


class TestToggle:
    def test_toggle_sets_and_clears_completed_at(self, tree_document):
        wp = _wp(tree_document)
        once = toggle_todo_in_workpackage(wp, "t1", "s1", "s1-td1", now=NOW)
        todo = once.tasks[0].subtasks[0].todos[1]
        assert todo.done is True
        assert todo.completed_at == NOW.isoformat()

        twice = toggle_todo_in_workpackage(once, "t1", "s1", "s1-td1", now=NOW)
        todo = twice.tasks[0].subtasks[0].todos[1]
        assert todo.done is False
        assert todo.completed_at is None

    def test_double_toggle_restores_progress_everywhere(self, tree_document):
        project = recompute_project(_project(_wp(tree_document), Workpackage(id="wp2", project_id="p1")))
        before = _progress_map(project)

        after = toggle_todo(project, "wp1", "t2", "s3", "s3-td0")
        after = toggle_todo(after, "wp1", "t2", "s3", "s3-td0")
        assert _progress_map(after) == before

    def test_inputs_are_not_mutated(self, tree_document):
        wp = _wp(tree_document)
        toggle_todo_in_workpackage(wp, "t1", "s1", "s1-td1")
        assert wp.tasks[0].subtasks[0].todos[1].done is False
        assert wp.progress == 75


class TestAddDelete:
    def test_add_appends_in_order(self, tree_document):
        wp = _wp(tree_document)
        updated = add_todo_to_workpackage(wp, "t2", "s3", "Export movies", todo_id="new", now=NOW)
        s3 = updated.tasks[1].subtasks[0]
        assert [t.id for t in s3.todos] == ["s3-td0", "s3-td1", "new"]
        assert s3.todos[-1].order == 2
        assert s3.todos[-1].created_at == NOW.isoformat()
        # s3 2/3 → 67; t2 67; wp (50 + 67) / 2 = 58.5 → 59
        assert s3.progress == 67
        assert updated.progress == 59

    def test_add_generates_id(self, tree_document):
        updated = add_todo_to_workpackage(_wp(tree_document), "t2", "s3", "Another")
        assert updated.tasks[1].subtasks[0].todos[-1].id

    def test_add_requires_text(self, tree_document):
        with pytest.raises(ValidationError):
            add_todo_to_workpackage(_wp(tree_document), "t2", "s3", "   ")

    def test_add_rejects_duplicate_id(self, tree_document):
        with pytest.raises(ValidationError):
            add_todo_to_workpackage(_wp(tree_document), "t2", "s3", "dup", todo_id="s3-td0")

    def test_delete_removes_by_id(self, tree_document):
        wp = _wp(tree_document)
        updated = delete_todo_from_workpackage(wp, "t1", "s1", "s1-td0")
        s1 = updated.tasks[0].subtasks[0]
        assert [t.id for t in s1.todos] == ["s1-td1", "s1-td2", "s1-td3"]
        assert s1.progress == 0

    def test_delete_last_todo_makes_subtask_zero(self):
        wp = Workpackage(id="wp", tasks=(
            Task(id="t", subtasks=(Subtask(id="s", todos=(Todo(id="a", done=True),), progress=100),)),
        ))
        updated = delete_todo_from_workpackage(wp, "t", "s", "a")
        assert updated.tasks[0].subtasks[0].progress == 0
        assert updated.progress == 0

    def test_project_level_add_and_delete(self, tree_document):
        project = recompute_project(_project(_wp(tree_document)))
        added = add_todo(project, "wp1", "t1", "s1", "Check ice", todo_id="ice")
        assert added.workpackages[0].tasks[0].subtasks[0].todos[-1].id == "ice"
        removed = delete_todo(added, "wp1", "t1", "s1", "ice")
        assert _progress_map(removed) == _progress_map(project)


class TestNotFound:
    @pytest.mark.parametrize("path,resource", [
        (("wp1", "nope", "s1", "s1-td0"), "Task"),
        (("wp1", "t1", "nope", "s1-td0"), "Subtask"),
        (("wp1", "t1", "s1", "nope"), "Todo"),
        (("nope", "t1", "s1", "s1-td0"), "Workpackage"),
    ])
    def test_unknown_ids_raise(self, tree_document, path, resource):
        project = _project(_wp(tree_document))
        with pytest.raises(NotFoundError) as exc:
            toggle_todo(project, *path)
        assert exc.value.resource == resource
        assert exc.value.resource_id == "nope"

    def test_foreign_workpackage_is_not_found(self, tree_document):
        foreign = _wp(tree_document, wp_id="wpx", project_id="other")
        with pytest.raises(NotFoundError):
            toggle_todo(_project(foreign), "wpx", "t1", "s1", "s1-td0")


class TestZeroSubtaskTask:
    def test_manual_progress_kept(self):
        task = Task(id="t", status="at-risk", progress=40)
        assert recalculate_task(task, policy=StatusPolicy.PROMOTE_ON_COMPLETE) is task

    def test_counts_in_workpackage_aggregate(self):
        wp = recompute_workpackage(Workpackage(id="wp", tasks=(
            Task(id="manual", progress=40),
            Task(id="derived", subtasks=(Subtask(id="s", todos=(Todo(id="a", done=True),)),)),
        )))
        assert wp.tasks[0].progress == 40
        assert wp.tasks[1].progress == 100
        assert wp.progress == 70

    def test_subtask_without_todos_is_zero(self):
        assert recalculate_subtask(Subtask(id="s", progress=80)).progress == 0


class TestStatusPolicy:
    def test_manual_never_changes_status(self):
        assert apply_status_policy("in-progress", 100, StatusPolicy.MANUAL) == "in-progress"

    def test_promote_at_100(self):
        assert apply_status_policy("in-progress", 100, StatusPolicy.PROMOTE_ON_COMPLETE) == "done"

    def test_demote_below_100(self):
        policy = StatusPolicy.PROMOTE_ON_COMPLETE
        assert apply_status_policy("done", 50, policy) == "in-progress"
        assert apply_status_policy("done", 0, policy) == "not-started"

    def test_other_statuses_kept_below_100(self):
        assert apply_status_policy("blocked", 50, StatusPolicy.PROMOTE_ON_COMPLETE) == "blocked"

    def test_promotion_through_toggle(self, tree_document):
        policy = StatusPolicy.PROMOTE_ON_COMPLETE
        wp = recompute_workpackage(
            Workpackage(id="wp1", project_id="p1", tasks=tasks_from_document(tree_document)),
            policy=policy,
        )
        assert wp.tasks[1].status == "done"
        assert wp.tasks[1].subtasks[0].status == "done"

        reopened = toggle_todo_in_workpackage(wp, "t2", "s3", "s3-td0", policy=policy)
        assert reopened.tasks[1].subtasks[0].status == "in-progress"
        assert reopened.tasks[1].status == "in-progress"

    def test_workpackage_labels(self):
        policy = StatusPolicy.PROMOTE_ON_COMPLETE
        wp = recompute_workpackage(Workpackage(id="wp", status="active", tasks=(
            Task(id="t", subtasks=(Subtask(id="s", todos=(Todo(id="a", done=True),)),)),
        )), policy=policy)
        assert wp.status == "completed"
        reopened = toggle_todo_in_workpackage(wp, "t", "s", "a", policy=policy)
        assert reopened.status == "active"

    def test_parse(self):
        assert StatusPolicy.parse(None) is StatusPolicy.MANUAL
        assert StatusPolicy.parse("Promote_On_Complete") is StatusPolicy.PROMOTE_ON_COMPLETE
        with pytest.raises(ValidationError):
            StatusPolicy.parse("always")


class TestProjectStats:
    def test_counts(self, tree_document):
        stats = project_stats(_project(_wp(tree_document), Workpackage(id="wp2", project_id="p1")))
        assert stats["workpackages"] == {"total": 2, "completed": 0}
        assert stats["tasks"] == {"total": 2, "completed": 1}
        assert stats["subtasks"] == {"total": 3, "completed": 1}
        assert stats["todos"] == {"total": 10, "completed": 6}


class TestSnapshotParsing:
    def test_legacy_spellings(self):
        task = Task.from_dict({
            "id": "t", "status": "working",
            "subtasks": [{"id": "s", "status": "completed", "todos": [{"id": "a", "completed": True}]}],
        })
        assert task.status == "in-progress"
        assert task.subtasks[0].status == "done"
        assert task.subtasks[0].todos[0].done is True

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError):
            Task.from_dict({"name": "no id"})

    def test_non_finite_progress_reads_as_zero(self):
        task = Task.from_dict({"id": "t", "progress": "NaN", "subtasks": [{"id": "s", "progress": "inf"}]})
        assert task.progress == 0
        assert task.subtasks[0].progress == 0

    @pytest.mark.parametrize("weight", ["inf", "-inf", "nan"])
    def test_non_finite_weight_rejected(self, weight):
        with pytest.raises(ValidationError):
            Task.from_dict({"id": "t", "weight": weight})
