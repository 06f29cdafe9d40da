"""Create catalog, shop and mystery box tables.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("shops"):
        op.create_table(
            "shops",
            sa.Column("shop_id", sa.String(), primary_key=True),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("installed_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )

    if not inspector.has_table("catalog_items"):
        op.create_table(
            "catalog_items",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop_id", sa.String(), nullable=False),
            sa.Column("external_id", sa.String(), nullable=False),
            sa.Column("title", sa.Text(), nullable=False),
            sa.Column("vendor", sa.Text(), nullable=True),
            sa.Column("product_type", sa.Text(), nullable=True),
            sa.Column("tags", _json(), nullable=False),
            sa.Column("price", sa.Numeric(10, 2), nullable=False),
            sa.Column("compare_at_price", sa.Numeric(10, 2), nullable=True),
            sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("variants", _json(), nullable=False),
            sa.Column("images", _json(), nullable=False),
            sa.Column("last_synced_at", sa.DateTime(), nullable=False),
            *_timestamps(),
            sa.CheckConstraint("price >= 0", name="ck_catalog_items_price_non_negative"),
            sa.CheckConstraint("stock_quantity >= 0", name="ck_catalog_items_stock_non_negative"),
        )
        op.create_index("ix_catalog_items_shop_id", "catalog_items", ["shop_id"])
        op.create_index(
            "uq_catalog_items_shop_external", "catalog_items", ["shop_id", "external_id"], unique=True
        )
        op.create_index(
            "ix_catalog_items_shop_eligible", "catalog_items", ["shop_id", "is_active", "stock_quantity"]
        )

    if not inspector.has_table("mystery_boxes"):
        op.create_table(
            "mystery_boxes",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop_id", sa.String(), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("min_value", sa.Numeric(10, 2), nullable=False),
            sa.Column("max_value", sa.Numeric(10, 2), nullable=False),
            sa.Column("min_items", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("max_items", sa.Integer(), nullable=False, server_default=sa.text("10")),
            sa.Column("include_tags", _json(), nullable=False),
            sa.Column("exclude_tags", _json(), nullable=False),
            sa.Column("include_types", _json(), nullable=False),
            sa.Column("exclude_types", _json(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.CheckConstraint("min_value <= max_value", name="ck_mystery_boxes_value_range"),
            sa.CheckConstraint("min_items >= 1 AND min_items <= max_items", name="ck_mystery_boxes_item_range"),
        )
        op.create_index("ix_mystery_boxes_shop_id", "mystery_boxes", ["shop_id"])
        op.create_index("ix_mystery_boxes_created_at", "mystery_boxes", ["created_at"])

    if not inspector.has_table("box_instances"):
        op.create_table(
            "box_instances",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column(
                "template_id",
                sa.String(),
                sa.ForeignKey("mystery_boxes.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("shop_id", sa.String(), nullable=False),
            sa.Column("selected_items", _json(), nullable=False),
            sa.Column("total_value", sa.Numeric(10, 2), nullable=False),
            sa.Column("item_count", sa.Integer(), nullable=False),
            sa.Column("savings", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("strategy", sa.String(), nullable=False, server_default="primary"),
            sa.Column("status", sa.String(), nullable=False, server_default="draft"),
            sa.Column("generated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
            sa.Column("status_updated_at", sa.DateTime(), nullable=True),
            sa.CheckConstraint("status IN ('draft','published','sold')", name="ck_box_instances_status"),
            sa.CheckConstraint("savings >= 0", name="ck_box_instances_savings_non_negative"),
        )
        op.create_index("ix_box_instances_template_id", "box_instances", ["template_id"])
        op.create_index("ix_box_instances_shop_id", "box_instances", ["shop_id"])
        op.create_index(
            "ix_box_instances_template_generated", "box_instances", ["template_id", "generated_at"]
        )

    if not inspector.has_table("shop_sync_status"):
        op.create_table(
            "shop_sync_status",
            sa.Column("shop_id", sa.String(), primary_key=True),
            sa.Column("initial_sync_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_sync_started_at", sa.DateTime(), nullable=True),
            sa.Column("last_sync_completed_at", sa.DateTime(), nullable=True),
            sa.Column("last_report", _json(), nullable=True),
            *_timestamps(),
        )


def downgrade() -> None:
    op.drop_table("shop_sync_status")
    op.drop_table("box_instances")
    op.drop_table("mystery_boxes")
    op.drop_table("catalog_items")
    op.drop_table("shops")
