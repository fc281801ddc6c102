"""Turn log, checkpoint and fan-in schema.

Revision ID: 0001_turn_log
Revises: None
Create Date: 2026-10-19

Idempotent (IF NOT EXISTS everywhere) so it is safe to re-run.
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_turn_log"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # -- sessions -------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            context_type    VARCHAR(32) NOT NULL,
            context_id      TEXT NOT NULL,
            agent_role      VARCHAR(64) NOT NULL,
            provider        VARCHAR(32) NOT NULL DEFAULT '',
            status          VARCHAR(16) NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'completed', 'failed')),
            end_reason      TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_context "
        "ON sessions(context_type, context_id, agent_role)"
    )

    # -- turns ----------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS turns (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            session_id          UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            turn_index          INTEGER NOT NULL CHECK (turn_index >= 0),
            role                VARCHAR(16) NOT NULL CHECK (role IN ('user', 'assistant')),
            status              VARCHAR(16) NOT NULL DEFAULT 'streaming'
                                CHECK (status IN ('streaming', 'completed', 'failed')),
            token_count         INTEGER NOT NULL DEFAULT 0,
            prompt_tokens       INTEGER NOT NULL DEFAULT 0,
            completion_tokens   INTEGER NOT NULL DEFAULT 0,
            model_id            TEXT NOT NULL DEFAULT '',
            hidden              BOOLEAN NOT NULL DEFAULT false,
            error_detail        TEXT,
            created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at        TIMESTAMPTZ,
            UNIQUE (session_id, turn_index)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS turn_messages (
            turn_id         UUID NOT NULL REFERENCES turns(id) ON DELETE CASCADE,
            message_index   INTEGER NOT NULL CHECK (message_index >= 0),
            content         TEXT NOT NULL,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (turn_id, message_index)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS turn_thoughts (
            turn_id         UUID NOT NULL REFERENCES turns(id) ON DELETE CASCADE,
            thought_index   INTEGER NOT NULL CHECK (thought_index >= 0),
            content         TEXT NOT NULL,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (turn_id, thought_index)
        )
    """)

    # -- tool invocations -----------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS tool_invocations (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            turn_id         UUID NOT NULL REFERENCES turns(id) ON DELETE CASCADE,
            tool_index      INTEGER NOT NULL CHECK (tool_index >= 0),
            tool_call_id    TEXT NOT NULL DEFAULT '',
            tool_name       VARCHAR(100) NOT NULL,
            reason          TEXT NOT NULL DEFAULT '',
            input_json      JSONB NOT NULL DEFAULT '{}'::jsonb,
            output          TEXT,
            status          VARCHAR(16) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'success', 'failed')),
            started_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at    TIMESTAMPTZ,
            UNIQUE (turn_id, tool_index)
        )
    """)
    # Tools serialise within a turn: at most one pending invocation.
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_tool_invocations_one_pending "
        "ON tool_invocations(turn_id) WHERE status = 'pending'"
    )

    # -- questions ------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS questions (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            session_id      UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            turn_id         UUID NOT NULL REFERENCES turns(id) ON DELETE CASCADE,
            question_index  INTEGER NOT NULL CHECK (question_index >= 0),
            type            VARCHAR(16) NOT NULL
                            CHECK (type IN ('single_select', 'multi_select', 'ranked', 'free_text')),
            prompt          TEXT NOT NULL,
            options_json    JSONB NOT NULL DEFAULT '[]'::jsonb,
            answer_json     JSONB,
            status          VARCHAR(16) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'answered', 'skipped')),
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            answered_at     TIMESTAMPTZ,
            UNIQUE (turn_id, question_index),
            CHECK (status <> 'answered' OR answer_json IS NOT NULL)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_questions_pending "
        "ON questions(session_id) WHERE status = 'pending'"
    )

    # -- checkpoint: notes & todos -------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS session_notes (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            session_id      UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            context_type    VARCHAR(32) NOT NULL DEFAULT '',
            context_id      TEXT NOT NULL DEFAULT '',
            content         TEXT NOT NULL,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_session_notes_session ON session_notes(session_id)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS session_todos (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            session_id      UUID NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            context_type    VARCHAR(32) NOT NULL DEFAULT '',
            context_id      TEXT NOT NULL DEFAULT '',
            title           TEXT NOT NULL,
            description     TEXT NOT NULL DEFAULT '',
            checked         BOOLEAN NOT NULL DEFAULT false,
            sort_order      INTEGER NOT NULL DEFAULT 0,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            checked_at      TIMESTAMPTZ
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_session_todos_session "
        "ON session_todos(session_id, sort_order)"
    )

    # -- fan-in ---------------------------------------------------------------
    op.execute("""
        CREATE TABLE IF NOT EXISTS fan_in_groups (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            expected_count  INTEGER NOT NULL CHECK (expected_count > 0),
            trigger_state   VARCHAR(16) NOT NULL DEFAULT 'waiting'
                            CHECK (trigger_state IN ('waiting', 'triggered', 'trigger_failed', 'all_failed')),
            triggered_at    TIMESTAMPTZ,
            trigger_error   TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS fan_in_members (
            group_id        UUID NOT NULL REFERENCES fan_in_groups(id) ON DELETE CASCADE,
            member_id       TEXT NOT NULL,
            status          VARCHAR(16) NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'running', 'completed', 'failed')),
            session_id      UUID REFERENCES sessions(id) ON DELETE SET NULL,
            payload         JSONB,
            error           TEXT,
            completed_at    TIMESTAMPTZ,
            PRIMARY KEY (group_id, member_id)
        )
    """)


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.execute("DROP TABLE IF EXISTS fan_in_members CASCADE")
    op.execute("DROP TABLE IF EXISTS fan_in_groups CASCADE")
    op.execute("DROP TABLE IF EXISTS session_todos CASCADE")
    op.execute("DROP TABLE IF EXISTS session_notes CASCADE")
    op.execute("DROP TABLE IF EXISTS questions CASCADE")
    op.execute("DROP TABLE IF EXISTS tool_invocations CASCADE")
    op.execute("DROP TABLE IF EXISTS turn_thoughts CASCADE")
    op.execute("DROP TABLE IF EXISTS turn_messages CASCADE")
    op.execute("DROP TABLE IF EXISTS turns CASCADE")
    op.execute("DROP TABLE IF EXISTS sessions CASCADE")
