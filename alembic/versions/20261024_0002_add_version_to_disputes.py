"""add version to disputes

Revision ID: 20261024_0002
Revises: 20261017_0001
Create Date: 2026-10-24 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261024_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "disputes",
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )

    bind = op.get_bind()
    if bind and bind.dialect.name != "sqlite":
        op.alter_column("disputes", "version", server_default=None)


def downgrade() -> None:
    with op.batch_alter_table("disputes") as batch_op:
        batch_op.drop_column("version")
