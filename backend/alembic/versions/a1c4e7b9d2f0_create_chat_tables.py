"""create chat session, memory and artifact tables

Revision ID: a1c4e7b9d2f0
Revises:
Create Date: 2026-10-17 09:12:31.402117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7b9d2f0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("""
    CREATE EXTENSION IF NOT EXISTS pgcrypto;

    CREATE TABLE IF NOT EXISTS chat_sessions (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id varchar(128) NOT NULL,
        kind varchar(16) NOT NULL,               -- guide|bible
        session_id varchar(128) NOT NULL,
        title varchar(200) NOT NULL,
        started_at timestamptz NOT NULL DEFAULT now(),
        ended_at timestamptz NOT NULL,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now(),
        CONSTRAINT uq_chat_sessions_user_kind_session UNIQUE (user_id, kind, session_id)
    );

    CREATE INDEX IF NOT EXISTS ix_chat_sessions_session_id
        ON chat_sessions (session_id);

    CREATE INDEX IF NOT EXISTS idx_chat_sessions_user_kind_ended_at
        ON chat_sessions (user_id, kind, ended_at);

    CREATE TABLE IF NOT EXISTS chat_messages (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        chat_session_id uuid NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        position integer NOT NULL,
        role varchar(16) NOT NULL,               -- user|assistant
        content text NOT NULL,
        actions jsonb NULL,
        client_timestamp text NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    );

    CREATE INDEX IF NOT EXISTS idx_chat_messages_session_position
        ON chat_messages (chat_session_id, position);

    CREATE TABLE IF NOT EXISTS chat_conversations (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        conversation_id varchar(128) NOT NULL UNIQUE,
        user_id varchar(128) NOT NULL,
        entrypoint varchar(32) NOT NULL DEFAULT 'other',
        mode varchar(32) NOT NULL DEFAULT 'general',
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    );

    CREATE INDEX IF NOT EXISTS ix_chat_conversations_user_id
        ON chat_conversations (user_id);

    CREATE TABLE IF NOT EXISTS chat_session_memory_notes (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        conversation_id varchar(128) NOT NULL,
        user_id varchar(128) NOT NULL,
        text text NOT NULL,
        keywords jsonb NOT NULL DEFAULT '[]'::jsonb,
        expires_at timestamptz NULL,
        created_at timestamptz NOT NULL DEFAULT now()
    );

    CREATE INDEX IF NOT EXISTS idx_session_notes_conversation_created_at
        ON chat_session_memory_notes (conversation_id, created_at);

    CREATE INDEX IF NOT EXISTS idx_session_notes_user_created_at
        ON chat_session_memory_notes (user_id, created_at);

    CREATE TABLE IF NOT EXISTS user_memory_states (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id varchar(128) NOT NULL UNIQUE,
        schema_version varchar(64) NOT NULL,
        global_notes jsonb NOT NULL DEFAULT '[]'::jsonb,
        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS artifacts (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id varchar(128) NOT NULL,
        session_id varchar(128) NULL,

        scope varchar(16) NOT NULL,              -- private|shared
        type varchar(64) NOT NULL,               -- conversation_session_summary|...

        title text NULL,
        content text NOT NULL,
        content_hash varchar(64) NOT NULL,

        tags jsonb NOT NULL DEFAULT '[]'::jsonb,
        scripture_refs jsonb NOT NULL DEFAULT '[]'::jsonb,
        metadata jsonb NOT NULL DEFAULT '{}'::jsonb,

        source varchar(32) NOT NULL DEFAULT 'system',
        status varchar(16) NOT NULL DEFAULT 'active',   -- active|archived|deleted

        created_at timestamptz NOT NULL DEFAULT now(),
        updated_at timestamptz NOT NULL DEFAULT now()
    );

    CREATE INDEX IF NOT EXISTS idx_artifacts_user_session_type_status
        ON artifacts (user_id, session_id, type, status);

    CREATE UNIQUE INDEX IF NOT EXISTS uq_artifacts_active_session_summary
        ON artifacts (user_id, session_id, type, status)
        WHERE type = 'conversation_session_summary' AND status = 'active';
    """)


def downgrade() -> None:
    op.execute("""
    DROP TABLE IF EXISTS artifacts;
    DROP TABLE IF EXISTS user_memory_states;
    DROP TABLE IF EXISTS chat_session_memory_notes;
    DROP TABLE IF EXISTS chat_conversations;
    DROP TABLE IF EXISTS chat_messages;
    DROP TABLE IF EXISTS chat_sessions;
    """)
