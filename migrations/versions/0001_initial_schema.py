"""initial schema: artefacts, replica sets, routage, runs, approbations, utilisateurs

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

DEPLOYMENT_PHASE = sa.Enum(
    "IDLE", "DEPLOYING", "PRE_CHECK", "AWAITING_APPROVAL", "CUTOVER", "POST_CHECK", "COMMITTED",
    "ROLLING_BACK", name="deploymentphase"
)
REPLICA_SET_ROLE = sa.Enum("BLUE", "GREEN", "RETIRING", name="replicasetrole")
RUN_OUTCOME = sa.Enum("IN_PROGRESS", "SUCCEEDED", "ROLLED_BACK", "FAILED", name="runoutcome")
STAGE_OUTCOME = sa.Enum("SUCCEEDED", "FAILED", "ROLLED_BACK", "CANCELLED", name="stageoutcome")
DECISION_STATUS = sa.Enum("PENDING", "APPROVED", "REJECTED", name="decisionstatus")
USER_ROLE = sa.Enum("OPERATOR", "APPROVER", "ADMIN", name="userrole")


def _timestamps():
    return [
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "artifacts",
        *_timestamps(),
        sa.Column("revision_id", sa.String(128), nullable=False),
        sa.Column("image_reference", sa.String(512), nullable=False),
    )
    op.create_index("ix_artifacts_id", "artifacts", ["id"])
    op.create_index("ix_artifacts_revision_id", "artifacts", ["revision_id"], unique=True)

    op.create_table(
        "replica_sets",
        *_timestamps(),
        sa.Column("set_id", sa.String(128), nullable=False),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("revision_id", sa.String(128), sa.ForeignKey("artifacts.revision_id"), nullable=False),
        sa.Column("role", REPLICA_SET_ROLE, nullable=False),
        sa.Column("instance_count", sa.Integer(), nullable=False),
        sa.Column("desired_port", sa.Integer(), nullable=False),
        sa.Column("retiring_since", sa.DateTime(), nullable=True),
        sa.Column("retired_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_replica_sets_id", "replica_sets", ["id"])
    op.create_index("ix_replica_sets_set_id", "replica_sets", ["set_id"], unique=True)
    op.create_index("ix_replica_sets_service_name", "replica_sets", ["service_name"])

    op.create_table(
        "routing_states",
        *_timestamps(),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("live_set_id", sa.String(128), nullable=True),
        sa.Column("candidate_set_id", sa.String(128), nullable=True),
        sa.Column("previous_live_set_id", sa.String(128), nullable=True),
        sa.Column("phase", DEPLOYMENT_PHASE, nullable=False),
        sa.Column("active_run_id", sa.String(64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_routing_states_id", "routing_states", ["id"])
    op.create_index("ix_routing_states_service_name", "routing_states", ["service_name"], unique=True)

    op.create_table(
        "pipeline_runs",
        *_timestamps(),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("service_name", sa.String(255), nullable=False),
        sa.Column("source_revision", sa.String(255), nullable=False),
        sa.Column("revision_id", sa.String(128), nullable=True),
        sa.Column("outcome", RUN_OUTCOME, nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_pipeline_runs_id", "pipeline_runs", ["id"])
    op.create_index("ix_pipeline_runs_run_id", "pipeline_runs", ["run_id"], unique=True)
    op.create_index("ix_pipeline_runs_service_name", "pipeline_runs", ["service_name"])
    op.create_index("ix_pipeline_runs_outcome", "pipeline_runs", ["outcome"])

    op.create_table(
        "stage_results",
        *_timestamps(),
        sa.Column("run_pk", sa.Integer(), sa.ForeignKey("pipeline_runs.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("outcome", STAGE_OUTCOME, nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
    )
    op.create_index("ix_stage_results_id", "stage_results", ["id"])
    op.create_index("ix_stage_results_run_pk", "stage_results", ["run_pk"])

    op.create_table(
        "approval_decisions",
        *_timestamps(),
        sa.Column("run_id", sa.String(64), nullable=False),
        sa.Column("status", DECISION_STATUS, nullable=False),
        sa.Column("requested_at", sa.DateTime(), nullable=False),
        sa.Column("deadline", sa.DateTime(), nullable=True),
        sa.Column("decided_at", sa.DateTime(), nullable=True),
        sa.Column("decided_by", sa.String(100), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("reason", sa.String(50), nullable=True),
    )
    op.create_index("ix_approval_decisions_id", "approval_decisions", ["id"])
    op.create_index("ix_approval_decisions_run_id", "approval_decisions", ["run_id"], unique=True)

    op.create_table(
        "users",
        *_timestamps(),
        sa.Column("username", sa.String(50), nullable=False),
        sa.Column("hashed_password", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("role", USER_ROLE, nullable=False),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_username", "users", ["username"], unique=True)


def downgrade() -> None:
    for table in ("users", "approval_decisions", "stage_results", "pipeline_runs",
                  "routing_states", "replica_sets", "artifacts"):
        op.drop_table(table)
    for enum_type in (USER_ROLE, DECISION_STATUS, STAGE_OUTCOME, RUN_OUTCOME, REPLICA_SET_ROLE, DEPLOYMENT_PHASE):
        enum_type.drop(op.get_bind(), checkfirst=True)
