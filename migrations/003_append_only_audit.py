"""
Make status_transitions and artifacts append-only.

Rejects UPDATE and DELETE on both tables so the audit log and produced
artifacts can only grow.
"""

from yoyo import step

__depends__ = {"002_apply_status_transition"}

step(
    """
    CREATE OR REPLACE FUNCTION reject_row_mutation()
    RETURNS TRIGGER AS $$
    BEGIN
        RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
    END;
    $$ LANGUAGE plpgsql;
    """,
    "DROP FUNCTION IF EXISTS reject_row_mutation();",
)

step(
    """
    CREATE TRIGGER status_transitions_append_only
    BEFORE UPDATE OR DELETE ON status_transitions
    FOR EACH ROW EXECUTE FUNCTION reject_row_mutation();

    CREATE TRIGGER artifacts_append_only
    BEFORE UPDATE OR DELETE ON artifacts
    FOR EACH ROW EXECUTE FUNCTION reject_row_mutation();
    """,
    """
    DROP TRIGGER IF EXISTS artifacts_append_only ON artifacts;
    DROP TRIGGER IF EXISTS status_transitions_append_only ON status_transitions;
    """,
)
