"""Initial schema: registry, batches, recipes, harvests, inventory, sync jobs.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def _id():
    return sa.Column("id", sa.String(36), primary_key=True)


def upgrade() -> None:
    # ── Registry ─────────────────────────────────────────────
    op.create_table(
        "jurisdictions",
        _id(),
        sa.Column("code", sa.String(20), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("requires_external_sync", sa.Boolean(), server_default=sa.true()),
        sa.Column("requires_plant_tags", sa.Boolean(), server_default=sa.true()),
        sa.Column("manifest_required_on_destroy", sa.Boolean(), server_default=sa.false()),
        sa.Column("allowed_stages", sa.JSON()),
        sa.Column("tag_format_regex", sa.String(255)),
        sa.Column("harvest_weight_tolerance_pct", sa.Float()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "sites",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("jurisdiction_id", sa.String(36), sa.ForeignKey("jurisdictions.id")),
        sa.Column("license_number", sa.String(100)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "pods",
        _id(),
        sa.Column("site_id", sa.String(36), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("external_location_name", sa.String(255)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_pods_site_id", "pods", ["site_id"])

    # ── Batches ──────────────────────────────────────────────
    op.create_table(
        "batches",
        _id(),
        sa.Column("batch_number", sa.String(50), nullable=False),
        sa.Column("domain_type", sa.String(20), nullable=False),
        sa.Column("stage", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("quarantine_reason", sa.Text()),
        sa.Column("quarantined_at", sa.DateTime()),
        sa.Column("site_id", sa.String(36), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("cultivar_id", sa.String(36)),
        sa.Column("plant_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.Date()),
        sa.Column("expected_harvest_date", sa.Date()),
        sa.Column("external_batch_id", sa.String(100)),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="not_required"),
        sa.Column("last_sync_confirmation_id", sa.String(100)),
        sa.Column("active_recipe_activation_id", sa.String(36)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(36)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_batches_batch_number", "batches", ["batch_number"], unique=True)
    op.create_index("ix_batches_domain_type", "batches", ["domain_type"])
    op.create_index("ix_batches_stage", "batches", ["stage"])
    op.create_index("ix_batches_status", "batches", ["status"])
    op.create_index("ix_batches_site_id", "batches", ["site_id"])
    op.create_index("ix_batches_cultivar_id", "batches", ["cultivar_id"])
    op.create_index("ix_batches_external_batch_id", "batches", ["external_batch_id"])
    op.create_index("ix_batches_created_at", "batches", ["created_at"])

    op.create_table(
        "batch_stage_history",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("stage", sa.String(30), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("ended_at", sa.DateTime()),
        sa.Column("started_by", sa.String(36)),
        sa.Column("notes", sa.Text()),
    )
    op.create_index("ix_batch_stage_history_batch_id", "batch_stage_history", ["batch_id"])

    op.create_table(
        "batch_events",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("event_data", sa.JSON()),
        sa.Column("notes", sa.Text()),
        sa.Column("recorded_by", sa.String(36)),
        sa.Column("recorded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_batch_events_batch_id", "batch_events", ["batch_id"])
    op.create_index("ix_batch_events_event_type", "batch_events", ["event_type"])
    op.create_index("ix_batch_events_recorded_at", "batch_events", ["recorded_at"])

    op.create_table(
        "batch_plant_tags",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("tag", sa.String(64), nullable=False, unique=True),
        sa.Column("assigned_by", sa.String(36)),
        sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_batch_plant_tags_batch_id", "batch_plant_tags", ["batch_id"])

    op.create_table(
        "batch_pod_assignments",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("pod_id", sa.String(36), sa.ForeignKey("pods.id"), nullable=False),
        sa.Column("plant_count", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("assigned_by", sa.String(36)),
        sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("removed_by", sa.String(36)),
        sa.Column("removed_at", sa.DateTime()),
    )
    op.create_index("ix_batch_pod_assignments_batch_id", "batch_pod_assignments", ["batch_id"])
    op.create_index("ix_batch_pod_assignments_pod_id", "batch_pod_assignments", ["pod_id"])
    op.create_index("ix_batch_pod_assignments_removed_at", "batch_pod_assignments", ["removed_at"])

    # ── Recipes & telemetry ──────────────────────────────────
    op.create_table(
        "recipes",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("domain_type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("created_by", sa.String(36)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "recipe_versions",
        _id(),
        sa.Column("recipe_id", sa.String(36), sa.ForeignKey("recipes.id"), nullable=False),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_recipe_versions_recipe_id", "recipe_versions", ["recipe_id"])
    op.create_table(
        "recipe_stages",
        _id(),
        sa.Column(
            "recipe_version_id", sa.String(36),
            sa.ForeignKey("recipe_versions.id"), nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("duration_days", sa.Integer()),
    )
    op.create_index("ix_recipe_stages_recipe_version_id", "recipe_stages", ["recipe_version_id"])
    op.create_table(
        "recipe_setpoints",
        _id(),
        sa.Column(
            "recipe_version_id", sa.String(36),
            sa.ForeignKey("recipe_versions.id"), nullable=False,
        ),
        sa.Column("stage_id", sa.String(36), sa.ForeignKey("recipe_stages.id"), nullable=False),
        sa.Column("parameter_type", sa.String(30), nullable=False),
        sa.Column("min_value", sa.Float()),
        sa.Column("max_value", sa.Float()),
        sa.Column("value", sa.Float()),
        sa.Column("unit", sa.String(20)),
    )
    op.create_index(
        "ix_recipe_setpoints_recipe_version_id", "recipe_setpoints", ["recipe_version_id"]
    )
    op.create_index("ix_recipe_setpoints_stage_id", "recipe_setpoints", ["stage_id"])
    op.create_table(
        "recipe_activations",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("recipe_id", sa.String(36), sa.ForeignKey("recipes.id"), nullable=False),
        sa.Column(
            "recipe_version_id", sa.String(36),
            sa.ForeignKey("recipe_versions.id"), nullable=False,
        ),
        sa.Column("current_stage_id", sa.String(36), sa.ForeignKey("recipe_stages.id")),
        sa.Column("current_stage_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("stage_started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("activated_by", sa.String(36)),
        sa.Column("activated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("deactivated_by", sa.String(36)),
        sa.Column("deactivated_at", sa.DateTime()),
        sa.Column("deactivation_reason", sa.Text()),
    )
    op.create_index("ix_recipe_activations_batch_id", "recipe_activations", ["batch_id"])
    op.create_index(
        "uq_recipe_activations_one_active_per_batch",
        "recipe_activations",
        ["batch_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "telemetry_readings",
        _id(),
        sa.Column("pod_id", sa.String(36), sa.ForeignKey("pods.id"), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("temperature", sa.Float()),
        sa.Column("humidity", sa.Float()),
        sa.Column("co2", sa.Float()),
        sa.Column("lights_on", sa.Boolean()),
    )
    op.create_index(
        "ix_telemetry_readings_pod_timestamp", "telemetry_readings", ["pod_id", "timestamp"]
    )

    # ── Inventory / harvest / waste ──────────────────────────
    op.create_table(
        "inventory_items",
        _id(),
        sa.Column("site_id", sa.String(36), sa.ForeignKey("sites.id")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("item_type", sa.String(50), server_default="finished_good"),
        sa.Column("unit_of_measure", sa.String(20), server_default="g"),
        sa.Column("current_quantity", sa.Float(), server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_inventory_items_site_id", "inventory_items", ["site_id"])
    op.create_table(
        "inventory_movements",
        _id(),
        sa.Column("item_id", sa.String(36), sa.ForeignKey("inventory_items.id"), nullable=False),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id")),
        sa.Column("movement_type", sa.String(30), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(20), nullable=False),
        sa.Column("lot_code", sa.String(100)),
        sa.Column("notes", sa.Text()),
        sa.Column("recorded_by", sa.String(36)),
        sa.Column("recorded_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_inventory_movements_item_id", "inventory_movements", ["item_id"])
    op.create_index("ix_inventory_movements_batch_id", "inventory_movements", ["batch_id"])
    op.create_index("ix_inventory_movements_lot_code", "inventory_movements", ["lot_code"])
    op.create_index("ix_inventory_movements_recorded_at", "inventory_movements", ["recorded_at"])

    op.create_table(
        "harvest_records",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("wet_weight", sa.Float(), nullable=False),
        sa.Column("dry_weight", sa.Float()),
        sa.Column("waste_weight", sa.Float()),
        sa.Column("inventory_item_id", sa.String(36)),
        sa.Column("inventory_status", sa.String(20), nullable=False, server_default="not_requested"),
        sa.Column("inventory_movement_id", sa.String(36)),
        sa.Column("inventory_error", sa.Text()),
        sa.Column("lot_code", sa.String(100)),
        sa.Column("notes", sa.Text()),
        sa.Column("harvested_by", sa.String(36)),
        sa.Column("harvested_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_harvest_records_batch_id", "harvest_records", ["batch_id"])
    op.create_index("ix_harvest_records_harvested_at", "harvest_records", ["harvested_at"])
    op.create_table(
        "harvest_plant_records",
        _id(),
        sa.Column(
            "harvest_id", sa.String(36), sa.ForeignKey("harvest_records.id"), nullable=False
        ),
        sa.Column("plant_tag", sa.String(64), nullable=False),
        sa.Column("wet_weight", sa.Float(), nullable=False),
    )
    op.create_index("ix_harvest_plant_records_harvest_id", "harvest_plant_records", ["harvest_id"])

    op.create_table(
        "waste_logs",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("plant_count", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("waste_weight", sa.Float()),
        sa.Column("disposal_method", sa.String(50)),
        sa.Column("inert_material_weight", sa.Float()),
        sa.Column("recorded_by", sa.String(36)),
        sa.Column("recorded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_waste_logs_batch_id", "waste_logs", ["batch_id"])
    op.create_index("ix_waste_logs_recorded_at", "waste_logs", ["recorded_at"])

    # ── Regulatory sync ──────────────────────────────────────
    op.create_table(
        "phase_change_jobs",
        _id(),
        sa.Column("batch_id", sa.String(36), sa.ForeignKey("batches.id"), nullable=False),
        sa.Column("external_batch_id", sa.String(100), nullable=False),
        sa.Column("from_phase", sa.String(20), nullable=False),
        sa.Column("to_phase", sa.String(20), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("confirmation_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime()),
    )
    op.create_index(
        "ix_phase_change_jobs_status_next", "phase_change_jobs", ["status", "next_attempt_at"]
    )
    op.create_index(
        "ix_phase_change_jobs_batch_occurred", "phase_change_jobs", ["batch_id", "occurred_at"]
    )


def downgrade() -> None:
    for table in (
        "phase_change_jobs",
        "waste_logs",
        "harvest_plant_records",
        "harvest_records",
        "inventory_movements",
        "inventory_items",
        "telemetry_readings",
        "recipe_activations",
        "recipe_setpoints",
        "recipe_stages",
        "recipe_versions",
        "recipes",
        "batch_pod_assignments",
        "batch_plant_tags",
        "batch_events",
        "batch_stage_history",
        "batches",
        "pods",
        "sites",
        "jurisdictions",
    ):
        op.drop_table(table)
