"""
Перцептивные подписи видео.

- таблица media_signatures (source_id -> dHash кадров)
- вид артефакта signature
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_media_signatures"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("ALTER TYPE artifactkind ADD VALUE IF NOT EXISTS 'signature'")

    op.create_table(
        "media_signatures",
        sa.Column("source_id", sa.String(length=128), primary_key=True),
        sa.Column("frame_hashes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    # значение enum в PostgreSQL не удаляется; строк signature в media_artifacts быть не должно
    op.execute("DELETE FROM media_artifacts WHERE artifact_kind = 'signature'")
    op.drop_table("media_signatures")
