"""
Initial schema migration for Conveyor.

Creates the work_items, status_transitions, artifacts and clarifications
tables, their indexes, and the updated_at trigger.
"""

from yoyo import step

__depends__ = {}

step(
    """
    CREATE TABLE IF NOT EXISTS work_items (
        id UUID PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        item_type TEXT NOT NULL DEFAULT 'feature' CHECK (item_type IN ('feature', 'bug')),
        status TEXT NOT NULL DEFAULT 'backlog' CHECK (status IN (
            'backlog', 'product_design', 'tech_design', 'implementation',
            'review', 'done', 'reverted'
        )),
        review_status TEXT CHECK (review_status IN (
            'waiting_for_review', 'approved', 'request_changes', 'rejected',
            'waiting_for_clarification', 'clarification_received'
        )),
        issue_number INT UNIQUE,
        project_item_id TEXT,
        design_artifact_id UUID,
        pr_number INT,
        commit_message_artifact_id UUID,
        last_merged_pr INT,
        last_merge_sha TEXT,
        revert_pr_number INT,
        sync_pending BOOLEAN NOT NULL DEFAULT false,
        version INT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "DROP TABLE IF EXISTS work_items CASCADE;",
)

step(
    """
    CREATE TABLE IF NOT EXISTS status_transitions (
        seq BIGSERIAL UNIQUE,
        id UUID PRIMARY KEY,
        work_item_id UUID NOT NULL REFERENCES work_items(id),
        operation TEXT NOT NULL,
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        from_review_status TEXT,
        to_review_status TEXT,
        actor TEXT NOT NULL CHECK (actor IN ('agent', 'human')),
        reason TEXT,
        compensates UUID REFERENCES status_transitions(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "DROP TABLE IF EXISTS status_transitions CASCADE;",
)

step(
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        id UUID PRIMARY KEY,
        work_item_id UUID NOT NULL REFERENCES work_items(id),
        stage TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN (
            'product_design', 'tech_design', 'bug_investigation',
            'implementation', 'review', 'commit_message'
        )),
        content TEXT NOT NULL DEFAULT '',
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        supersedes UUID REFERENCES artifacts(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "DROP TABLE IF EXISTS artifacts CASCADE;",
)

step(
    """
    CREATE TABLE IF NOT EXISTS clarifications (
        id UUID PRIMARY KEY,
        work_item_id UUID NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
        stage TEXT NOT NULL,
        question JSONB NOT NULL,
        token_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'answered', 'expired')),
        answer TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        answered_at TIMESTAMPTZ
    );
    """,
    "DROP TABLE IF EXISTS clarifications CASCADE;",
)

step(
    """
    CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
    CREATE INDEX IF NOT EXISTS idx_work_items_sync_pending ON work_items(sync_pending)
        WHERE sync_pending;
    CREATE INDEX IF NOT EXISTS idx_status_transitions_item
        ON status_transitions(work_item_id, created_at, seq);
    CREATE INDEX IF NOT EXISTS idx_artifacts_item_kind ON artifacts(work_item_id, kind, created_at);
    CREATE INDEX IF NOT EXISTS idx_clarifications_pending ON clarifications(status, expires_at);
    """,
    """
    DROP INDEX IF EXISTS idx_clarifications_pending;
    DROP INDEX IF EXISTS idx_artifacts_item_kind;
    DROP INDEX IF EXISTS idx_status_transitions_item;
    DROP INDEX IF EXISTS idx_work_items_sync_pending;
    DROP INDEX IF EXISTS idx_work_items_status;
    """,
)

# Create updated_at trigger function
step(
    """
    CREATE OR REPLACE FUNCTION update_updated_at_column()
    RETURNS TRIGGER AS $$
    BEGIN
        NEW.updated_at = now();
        RETURN NEW;
    END;
    $$ language 'plpgsql';
    """,
    "DROP FUNCTION IF EXISTS update_updated_at_column();",
)

step(
    """
    CREATE TRIGGER update_work_items_updated_at
    BEFORE UPDATE ON work_items
    FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
    """,
    "DROP TRIGGER IF EXISTS update_work_items_updated_at ON work_items;",
)
