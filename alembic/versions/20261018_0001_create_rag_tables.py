"""create rag chunk, ingestion run and conversation tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "rag_chunks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("access_level", sa.String(length=16), nullable=False),
        sa.Column("file_path", sa.String(length=512), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("section", sa.String(length=512), nullable=False),
        sa.Column("category", sa.String(length=128), nullable=False),
        sa.Column("url", sa.String(length=512), nullable=False),
        sa.Column(
            "doc_type",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'docs'"),
        ),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False),
        sa.Column("embedding", sa.LargeBinary(), nullable=False),
        sa.Column("embedding_dim", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("ingested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ingested_by", sa.String(length=128), nullable=False),
        sa.Column(
            "schema_version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
    )
    op.create_index("ix_rag_chunks_file_path", "rag_chunks", ["file_path"])
    op.create_index("ix_rag_chunks_access_category", "rag_chunks", ["access_level", "category"])
    op.create_index("ix_rag_chunks_doc_type", "rag_chunks", ["doc_type"])

    op.create_table(
        "rag_ingestion_runs",
        sa.Column("run_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("stats", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("triggered_by", sa.String(length=128), nullable=False),
    )
    op.create_index(
        "ix_rag_ingestion_runs_status",
        "rag_ingestion_runs",
        ["status", "started_at"],
    )

    op.create_table(
        "rag_conversations",
        sa.Column("session_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("page", sa.String(length=512), nullable=False, server_default=sa.text("''")),
        sa.Column(
            "user_agent",
            sa.String(length=512),
            nullable=False,
            server_default=sa.text("''"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "rag_conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "session_id",
            sa.String(length=64),
            sa.ForeignKey("rag_conversations.session_id"),
            nullable=False,
        ),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sources", sa.JSON(), nullable=True),
        sa.Column("feedback", sa.String(length=8), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_rag_conversation_messages_session",
        "rag_conversation_messages",
        ["session_id", "id"],
    )


def downgrade() -> None:
    op.drop_index("ix_rag_conversation_messages_session", table_name="rag_conversation_messages")
    op.drop_table("rag_conversation_messages")
    op.drop_table("rag_conversations")
    op.drop_index("ix_rag_ingestion_runs_status", table_name="rag_ingestion_runs")
    op.drop_table("rag_ingestion_runs")
    op.drop_index("ix_rag_chunks_doc_type", table_name="rag_chunks")
    op.drop_index("ix_rag_chunks_access_category", table_name="rag_chunks")
    op.drop_index("ix_rag_chunks_file_path", table_name="rag_chunks")
    op.drop_table("rag_chunks")
