"""
tests/test_cli.py — ``flask recalc-progress`` and ``flask rebuild-ledger``.
"""

from labops.models import db
from labops.models.funding import FundingAccount
from labops.models.project import Workpackage as WorkpackageRow
from labops.services import funding_service, workpackage_service


def test_recalc_progress(app, project, tree_document):
    row = workpackage_service.create_workpackage(project.id, {"name": "Structure", "tasks": tree_document})
    db.session.commit()
    db.session.get(WorkpackageRow, row.id).progress = 3
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["recalc-progress"])

    assert result.exit_code == 0
    assert "Recalculated 1 projects, 1 workpackages changed." in result.output
    assert db.session.get(WorkpackageRow, row.id).progress == 75


def test_rebuild_ledger(app, account, allocation):
    funding_service.commit_order("po-1", account.id, 200, allocation_id=allocation.id)
    db.session.get(FundingAccount, account.id).committed_amount = 999
    db.session.commit()

    result = app.test_cli_runner().invoke(args=["rebuild-ledger", account.id])

    assert result.exit_code == 0
    assert "committed=200.00" in result.output
    assert "(1 transactions)" in result.output
