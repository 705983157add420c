"""
WSGI entry point for the LabOps Reconciliation Service.

Also used by the Flask CLI:
    FLASK_APP=wsgi.py flask db upgrade
    FLASK_APP=wsgi.py flask recalc-progress
    FLASK_APP=wsgi.py flask rebuild-ledger <account_id>
"""

from labops import create_app

app = create_app()
