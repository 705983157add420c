"""
tests/test_rollup.py — full-cascade recomputation.

Covers: recompute_workpackage from stale stored values, project progress
        restricted to the project's own workpackages (same membership rule
        as the single-todo path).
"""

from labops.services.rollup import recompute_project, recompute_project_progress, recompute_workpackage
from labops.services.snapshots import ProjectTree, Workpackage, tasks_from_document
from labops.services.task_tree import StatusPolicy, recalculate_project


def test_recompute_overwrites_stale_values(tree_document):
    for task in tree_document:
        task["progress"] = 5
        for sub in task["subtasks"]:
            sub["progress"] = 99

    wp = recompute_workpackage(Workpackage(id="wp1", progress=1, tasks=tasks_from_document(tree_document)))
    assert [s.progress for s in wp.tasks[0].subtasks] == [25, 75]
    assert [t.progress for t in wp.tasks] == [50, 100]
    assert wp.progress == 75


def test_recompute_is_stable(tree_document):
    wp = recompute_workpackage(Workpackage(id="wp1", tasks=tasks_from_document(tree_document)))
    assert recompute_workpackage(wp) == wp


def test_empty_workpackage_is_zero():
    assert recompute_workpackage(Workpackage(id="wp", progress=60)).progress == 0


def test_weighted_tasks(tree_document):
    tree_document[1]["weight"] = 3
    wp = recompute_workpackage(Workpackage(id="wp1", tasks=tasks_from_document(tree_document)))
    # (50 * 1 + 100 * 3) / 4 = 87.5
    assert wp.progress == 88


def test_promote_policy_cascades(tree_document):
    wp = recompute_workpackage(
        Workpackage(id="wp1", tasks=tasks_from_document(tree_document)),
        policy=StatusPolicy.PROMOTE_ON_COMPLETE,
    )
    assert wp.tasks[1].status == "done"
    assert wp.tasks[0].status == "in-progress"
    assert wp.status == "planning"


class TestProjectProgress:
    def test_ignores_foreign_workpackages(self):
        project = ProjectTree(id="p1")
        workpackages = [
            Workpackage(id="a", project_id="p1", progress=40),
            Workpackage(id="b", project_id="p1", progress=60),
            Workpackage(id="x", project_id="p2", progress=100),
        ]
        assert recompute_project_progress(project, workpackages) == 50

    def test_unassigned_workpackages_count_as_members(self):
        project = ProjectTree(id="p1", workpackages=(Workpackage(id="a", progress=20),))
        workpackages = [Workpackage(id="a", progress=20), Workpackage(id="b", project_id="p1", progress=80)]
        assert recompute_project_progress(project, workpackages) == 50

    def test_embedded_foreign_workpackage_matches_single_todo_path(self):
        project = ProjectTree(id="p1", workpackages=(
            Workpackage(id="a", project_id="p1", progress=0),
            Workpackage(id="x", project_id="p2", progress=100, tasks=tasks_from_document([
                {"id": "t", "subtasks": [{"id": "s", "todos": [{"id": "d", "done": True}]}]},
            ])),
        ))
        assert recompute_project(project).workpackages[1].progress == 100
        assert recompute_project(project).progress == 0
        assert recalculate_project(project).progress == recompute_project(project).progress

    def test_no_workpackages_is_zero(self):
        assert recompute_project_progress(ProjectTree(id="p1", progress=70), []) == 0

    def test_recompute_project(self, tree_document):
        project = ProjectTree(id="p1", workpackages=(
            Workpackage(id="wp1", project_id="p1", tasks=tasks_from_document(tree_document)),
            Workpackage(id="wp2", project_id="p1"),
        ))
        result = recompute_project(project)
        assert [wp.progress for wp in result.workpackages] == [75, 0]
        # (75 + 0) / 2 = 37.5
        assert result.progress == 38
