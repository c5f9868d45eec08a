"""create itemcore system tables

Revision ID: itemcore_001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "itemcore_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    # Append-only audit trail, one row per affected key
    op.execute("""
        CREATE TABLE IF NOT EXISTS itemcore_activity (
            id BIGSERIAL PRIMARY KEY,
            action TEXT NOT NULL,
            action_by TEXT,
            action_on TIMESTAMPTZ NOT NULL DEFAULT now(),
            collection TEXT NOT NULL,
            ip TEXT,
            user_agent TEXT,
            item TEXT NOT NULL
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_itemcore_activity_collection_item
        ON itemcore_activity (collection, item)
    """)

    # A NULL role is the public role
    op.execute("""
        CREATE TABLE IF NOT EXISTS itemcore_permissions (
            id SERIAL PRIMARY KEY,
            role TEXT,
            collection TEXT NOT NULL,
            action TEXT NOT NULL,
            fields TEXT DEFAULT '*',
            permissions JSONB,
            validation JSONB,
            presets JSONB
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_itemcore_permissions_role_collection_action
        ON itemcore_permissions (COALESCE(role, ''), collection, action)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS itemcore_fields (
            id SERIAL PRIMARY KEY,
            collection TEXT NOT NULL,
            field TEXT NOT NULL,
            special TEXT,
            UNIQUE (collection, field)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS itemcore_relations (
            id SERIAL PRIMARY KEY,
            many_collection TEXT NOT NULL,
            many_field TEXT NOT NULL,
            many_primary TEXT NOT NULL,
            one_collection TEXT,
            one_field TEXT,
            one_primary TEXT
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS itemcore_relations")
    op.execute("DROP TABLE IF EXISTS itemcore_fields")
    op.execute("DROP INDEX IF EXISTS uq_itemcore_permissions_role_collection_action")
    op.execute("DROP TABLE IF EXISTS itemcore_permissions")
    op.execute("DROP INDEX IF EXISTS idx_itemcore_activity_collection_item")
    op.execute("DROP TABLE IF EXISTS itemcore_activity")
