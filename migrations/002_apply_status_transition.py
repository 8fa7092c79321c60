"""
Add apply_status_transition RPC for atomic status changes.

The function compares the caller's expected version against the stored row,
applies the status, review status and pointer updates, and inserts the
status_transitions record inside one transaction. A version mismatch updates
nothing and returns an empty set, which the client reports as a conflict.
"""

from yoyo import step

__depends__ = {"001_initial_schema"}

step(
    """
    CREATE OR REPLACE FUNCTION apply_status_transition(
        p_item_id UUID,
        p_expected_version INT,
        p_transition JSONB,
        p_updates JSONB DEFAULT '{}'::jsonb
    )
    RETURNS SETOF work_items
    LANGUAGE plpgsql
    AS $$
    DECLARE
        v_row work_items;
    BEGIN
        UPDATE work_items w
        SET status = p_transition->>'to_status',
            review_status = p_transition->>'to_review_status',
            design_artifact_id = CASE WHEN p_updates ? 'design_artifact_id'
                THEN (p_updates->>'design_artifact_id')::uuid ELSE w.design_artifact_id END,
            pr_number = CASE WHEN p_updates ? 'pr_number'
                THEN (p_updates->>'pr_number')::int ELSE w.pr_number END,
            commit_message_artifact_id = CASE WHEN p_updates ? 'commit_message_artifact_id'
                THEN (p_updates->>'commit_message_artifact_id')::uuid
                ELSE w.commit_message_artifact_id END,
            last_merged_pr = CASE WHEN p_updates ? 'last_merged_pr'
                THEN (p_updates->>'last_merged_pr')::int ELSE w.last_merged_pr END,
            last_merge_sha = CASE WHEN p_updates ? 'last_merge_sha'
                THEN p_updates->>'last_merge_sha' ELSE w.last_merge_sha END,
            revert_pr_number = CASE WHEN p_updates ? 'revert_pr_number'
                THEN (p_updates->>'revert_pr_number')::int ELSE w.revert_pr_number END,
            version = w.version + 1
        WHERE w.id = p_item_id
          AND w.version = p_expected_version
          AND w.status = p_transition->>'from_status'
        RETURNING * INTO v_row;

        IF NOT FOUND THEN
            RETURN;
        END IF;

        INSERT INTO status_transitions (
            id, work_item_id, operation, from_status, to_status,
            from_review_status, to_review_status, actor, reason, compensates, created_at
        ) VALUES (
            (p_transition->>'id')::uuid,
            p_item_id,
            p_transition->>'operation',
            p_transition->>'from_status',
            p_transition->>'to_status',
            p_transition->>'from_review_status',
            p_transition->>'to_review_status',
            p_transition->>'actor',
            p_transition->>'reason',
            (p_transition->>'compensates')::uuid,
            COALESCE((p_transition->>'created_at')::timestamptz, now())
        );

        RETURN NEXT v_row;
    END;
    $$;
    """,
    "DROP FUNCTION IF EXISTS apply_status_transition(UUID, INT, JSONB, JSONB);",
)
