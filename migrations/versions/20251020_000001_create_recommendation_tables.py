"""Create products, tag_graph and process_tracker tables.

Revision ID: 20251020_000001
Revises:
Create Date: 2025-10-20 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20251020_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("products"):
        op.create_table(
            "products",
            sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
            sa.Column("shop_id", sa.Text(), nullable=False),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("category", sa.Text(), nullable=True),
            sa.Column("tags", sa.Text(), nullable=True, server_default=sa.text("'product'")),
            sa.Column("weight", sa.Numeric(10, 3), nullable=True),
            sa.Column("vendor", sa.Text(), nullable=True),
            sa.Column("price", sa.Numeric(12, 2), nullable=False),
            sa.Column(
                "variants",
                postgresql.JSONB(astext_type=sa.Text()),
                nullable=False,
                server_default=sa.text("'[]'::jsonb"),
            ),
            sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
            sa.Column("stock", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("merchant_score", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("purchase_score", sa.Float(), nullable=False, server_default=sa.text("0")),
            sa.Column("embedding", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            sa.Column("embedding_version", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )
        op.create_index("ix_products_shop_id", "products", ["shop_id"])
        op.create_index("ix_products_tags", "products", ["tags"])
        op.create_index("ix_products_category", "products", ["category"])

    if not inspector.has_table("tag_graph"):
        op.create_table(
            "tag_graph",
            sa.Column("tag_name", sa.Text(), primary_key=True),
            sa.Column("children", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )

    if not inspector.has_table("process_tracker"):
        op.create_table(
            "process_tracker",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("shop_id", sa.Text(), nullable=False),
            sa.Column("status", sa.Text(), nullable=False),
            sa.Column("product_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("last_run", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
            sa.CheckConstraint(
                "status IN ('running','completed','failed')",
                name="ck_process_tracker_status",
            ),
        )
        op.create_index(
            "ix_process_tracker_shop_started",
            "process_tracker",
            ["shop_id", "started_at"],
        )


def downgrade() -> None:
    op.drop_index("ix_process_tracker_shop_started", table_name="process_tracker")
    op.drop_table("process_tracker")
    op.drop_table("tag_graph")
    op.drop_index("ix_products_category", table_name="products")
    op.drop_index("ix_products_tags", table_name="products")
    op.drop_index("ix_products_shop_id", table_name="products")
    op.drop_table("products")
