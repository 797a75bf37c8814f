"""initial_schema

Revision ID: 4b1f2c9d7e10
Revises:
Create Date: 2026-10-18 09:12:41.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4b1f2c9d7e10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

contract_type = sa.Enum("ERC721", "ERC1155", name="contracttype")
checkpoint_status = sa.Enum(
    "NEVER_SYNCED", "PROCESSING", "COMPLETED", "FAILED", name="checkpointstatus"
)


def upgrade() -> None:
    """Create events, current_state, sync_status and contracts tables."""
    op.create_table(
        "contracts",
        sa.Column("address", sa.String(length=42), nullable=False),
        sa.Column("contract_type", contract_type, nullable=False),
        sa.Column("deployment_block", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(length=42), nullable=False),
        sa.Column("transaction_hash", sa.String(length=66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("from_address", sa.String(length=42), nullable=False),
        sa.Column("to_address", sa.String(length=42), nullable=False),
        sa.Column("token_id", sa.String(length=78), nullable=False),
        sa.Column("amount", sa.String(length=78), nullable=False),
        sa.Column("operator", sa.String(length=42), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    # Identity of a (sub-)event; ON CONFLICT DO NOTHING relies on it
    op.create_index(
        "uq_events_identity",
        "events",
        ["transaction_hash", "log_index", "batch_index"],
        unique=True,
    )
    op.create_index("ix_events_contract_block", "events", ["contract_address", "block_number"])
    op.create_index("ix_events_from_address", "events", ["from_address"])
    op.create_index("ix_events_to_address", "events", ["to_address"])

    op.create_table(
        "current_state",
        sa.Column("contract_address", sa.String(length=42), nullable=False),
        sa.Column("address", sa.String(length=42), nullable=False),
        sa.Column("token_id", sa.String(length=78), nullable=False),
        sa.Column("balance", sa.String(length=78), nullable=False),
        sa.Column("last_updated_block", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("contract_address", "address", "token_id"),
    )
    op.create_index("ix_current_state_address", "current_state", ["address"])

    op.create_table(
        "sync_status",
        sa.Column("contract_address", sa.String(length=42), nullable=False),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=True),
        sa.Column("status", checkpoint_status, nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("sync_timestamp", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("contract_address"),
    )


def downgrade() -> None:
    """Drop all tokensync tables and enum types."""
    op.drop_table("sync_status")
    op.drop_index("ix_current_state_address", table_name="current_state")
    op.drop_table("current_state")
    op.drop_index("ix_events_to_address", table_name="events")
    op.drop_index("ix_events_from_address", table_name="events")
    op.drop_index("ix_events_contract_block", table_name="events")
    op.drop_index("uq_events_identity", table_name="events")
    op.drop_table("events")
    op.drop_table("contracts")
    checkpoint_status.drop(op.get_bind(), checkfirst=True)
    contract_type.drop(op.get_bind(), checkfirst=True)
