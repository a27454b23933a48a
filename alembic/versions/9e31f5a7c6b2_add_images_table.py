"""add images table with metadata blob

Revision ID: 9e31f5a7c6b2
Revises: 4b7e0c1d2a90
Create Date: 2025-08-15 23:49:16.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '9e31f5a7c6b2'
down_revision: Union[str, Sequence[str], None] = '4b7e0c1d2a90'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema: one row per generated image; newest row per page wins."""
    op.create_table(
        "images",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("book_id", sa.Integer(), sa.ForeignKey("books.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chapter_id", sa.Integer(), nullable=False),
        sa.Column("page_number", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_images_id", "images", ["id"])
    # deliberately not unique: concurrent generations may both land
    op.create_index(
        "ix_images_book_chapter_page",
        "images",
        ["book_id", "chapter_id", "page_number", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema: drop images."""
    op.drop_index("ix_images_book_chapter_page", table_name="images")
    op.drop_table("images")
