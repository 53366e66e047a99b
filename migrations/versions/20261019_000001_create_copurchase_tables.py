"""Create co-purchase index tables.

Revision ID: 20261019_000001
Revises: 
Create Date: 2026-10-19 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("copurchase_processed_orders"):
        op.create_table(
            "copurchase_processed_orders",
            sa.Column("order_id", sa.Integer(), primary_key=True, autoincrement=False),
            sa.Column(
                "processed_at",
                sa.DateTime(),
                server_default=sa.func.now(),
                nullable=False,
            ),
        )

    if not inspector.has_table("copurchase_product_pairs"):
        op.create_table(
            "copurchase_product_pairs",
            sa.Column("shop_id", sa.Integer(), nullable=False),
            sa.Column("product_a", sa.Integer(), nullable=False),
            sa.Column("product_b", sa.Integer(), nullable=False),
            sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.PrimaryKeyConstraint("shop_id", "product_a", "product_b"),
            sa.CheckConstraint("product_a <> product_b", name="ck_copurchase_pairs_distinct"),
            sa.CheckConstraint("count >= 0", name="ck_copurchase_pairs_count"),
        )
        op.create_index(
            "ix_copurchase_pairs_shop_b",
            "copurchase_product_pairs",
            ["shop_id", "product_b"],
        )

    if not inspector.has_table("copurchase_configuration"):
        op.create_table(
            "copurchase_configuration",
            sa.Column("name", sa.String(64), nullable=False),
            sa.Column("shop_id", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("value", sa.Text(), nullable=True),
            sa.Column(
                "updated_at",
                sa.DateTime(),
                server_default=sa.func.now(),
                nullable=False,
            ),
            sa.PrimaryKeyConstraint("name", "shop_id"),
        )

    if not inspector.has_table("copurchase_locks"):
        op.create_table(
            "copurchase_locks",
            sa.Column("name", sa.String(64), primary_key=True),
            sa.Column("owner", sa.String(64), nullable=False),
            sa.Column("acquired_at", sa.DateTime(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
        )


def downgrade() -> None:
    op.drop_table("copurchase_locks")
    op.drop_table("copurchase_configuration")
    op.drop_index("ix_copurchase_pairs_shop_b", table_name="copurchase_product_pairs")
    op.drop_table("copurchase_product_pairs")
    op.drop_table("copurchase_processed_orders")
