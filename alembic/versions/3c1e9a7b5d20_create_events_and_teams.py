"""Create events and teams tables with the team-change notify trigger.

Revision ID: 3c1e9a7b5d20
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from teamsync.constants import DB_SCHEMA, TEAM_CHANGES_CHANNEL

revision = "3c1e9a7b5d20"
down_revision = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column(
            "roster",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        schema=DB_SCHEMA,
    )

    op.create_table(
        "teams",
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey(f"{DB_SCHEMA}.events.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(256), nullable=False, server_default=""),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "activities",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        schema=DB_SCHEMA,
    )

    op.execute(f"""
        CREATE OR REPLACE FUNCTION {DB_SCHEMA}.notify_team_change()
        RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify(
                '{TEAM_CHANGES_CHANNEL}',
                json_build_object('event_id', NEW.event_id, 'team_id', NEW.id)::text
            );
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute(f"""
        CREATE TRIGGER trg_teams_notify_change
        AFTER INSERT OR UPDATE ON {DB_SCHEMA}.teams
        FOR EACH ROW
        EXECUTE FUNCTION {DB_SCHEMA}.notify_team_change()
    """)


def downgrade() -> None:
    op.execute(f"DROP TRIGGER IF EXISTS trg_teams_notify_change ON {DB_SCHEMA}.teams")
    op.execute(f"DROP FUNCTION IF EXISTS {DB_SCHEMA}.notify_team_change()")
    op.drop_table("teams", schema=DB_SCHEMA)
    op.drop_table("events", schema=DB_SCHEMA)
