from alembic import op
import sqlalchemy as sa

revision = "0001_create_pipeline_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "brands",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_brands_tenant_id", "brands", ["tenant_id"])

    op.create_table(
        "assets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=True),
        sa.Column("brand_id", sa.String(length=36), sa.ForeignKey("brands.id"), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("original_filename", sa.String(length=512), nullable=True),
        sa.Column("storage_path", sa.String(length=512), nullable=True),
        sa.Column("analysis_status", sa.String(length=32), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("thumbnail_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("dominant_hue_group", sa.String(length=32), nullable=True),
        sa.Column("dominant_color_bucket", sa.String(length=32), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_assets_tenant_id", "assets", ["tenant_id"])
    op.create_index("ix_assets_brand_id", "assets", ["brand_id"])
    op.create_index("ix_assets_analysis_status", "assets", ["analysis_status"])
    op.create_index("ix_assets_dominant_hue_group", "assets", ["dominant_hue_group"])
    op.create_index("ix_assets_dominant_color_bucket", "assets", ["dominant_color_bucket"])

    op.create_table(
        "asset_embeddings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("asset_id", sa.String(length=36), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("embedding_vector", sa.JSON(), nullable=False),
        sa.Column("model", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "brand_models",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("brand_id", sa.String(length=36), sa.ForeignKey("brands.id"), nullable=False, unique=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active_version_id", sa.Integer(), nullable=True),
    )

    op.create_table(
        "brand_model_versions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("brand_model_id", sa.Integer(), sa.ForeignKey("brand_models.id"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False, server_default="manual"),
        sa.Column("model_payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("brand_model_id", "version_number", name="uq_brand_model_version"),
    )
    op.create_index("ix_brand_model_versions_brand_model_id", "brand_model_versions", ["brand_model_id"])

    op.create_table(
        "brand_visual_references",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("brand_id", sa.String(length=36), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("asset_id", sa.String(length=36), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("embedding_vector", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_brand_visual_references_brand_id", "brand_visual_references", ["brand_id"])

    op.create_table(
        "brand_compliance_scores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("asset_id", sa.String(length=36), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("brand_id", sa.String(length=36), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("evaluation_status", sa.String(length=32), nullable=False),
        sa.Column("overall_score", sa.Integer(), nullable=True),
        sa.Column("color_score", sa.Float(), nullable=True),
        sa.Column("typography_score", sa.Float(), nullable=True),
        sa.Column("tone_score", sa.Float(), nullable=True),
        sa.Column("imagery_score", sa.Float(), nullable=True),
        sa.Column("breakdown_payload", sa.JSON(), nullable=False),
        sa.Column("brand_model_version_id", sa.Integer(), nullable=True),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("asset_id", "brand_id", name="uq_compliance_asset_brand"),
    )
    op.create_index("ix_brand_compliance_scores_brand_id", "brand_compliance_scores", ["brand_id"])

    op.create_table(
        "system_incidents",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("source_type", sa.String(length=16), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="error"),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("retryable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_system_incidents_source_id", "system_incidents", ["source_id"])

    op.create_table(
        "tickets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("incident_id", sa.String(length=36), sa.ForeignKey("system_incidents.id"), nullable=True),
        sa.Column("source_type", sa.String(length=16), nullable=False),
        sa.Column("source_id", sa.String(length=64), nullable=True),
        sa.Column("severity", sa.String(length=4), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="open"),
        sa.Column("subject", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tickets_source_id", "tickets", ["source_id"])


def downgrade():
    op.drop_index("ix_tickets_source_id", table_name="tickets")
    op.drop_table("tickets")
    op.drop_index("ix_system_incidents_source_id", table_name="system_incidents")
    op.drop_table("system_incidents")
    op.drop_index("ix_brand_compliance_scores_brand_id", table_name="brand_compliance_scores")
    op.drop_table("brand_compliance_scores")
    op.drop_index("ix_brand_visual_references_brand_id", table_name="brand_visual_references")
    op.drop_table("brand_visual_references")
    op.drop_index("ix_brand_model_versions_brand_model_id", table_name="brand_model_versions")
    op.drop_table("brand_model_versions")
    op.drop_table("brand_models")
    op.drop_table("asset_embeddings")
    for ix in ("dominant_color_bucket", "dominant_hue_group", "analysis_status", "brand_id", "tenant_id"):
        op.drop_index(f"ix_assets_{ix}", table_name="assets")
    op.drop_table("assets")
    op.drop_index("ix_brands_tenant_id", table_name="brands")
    op.drop_table("brands")
