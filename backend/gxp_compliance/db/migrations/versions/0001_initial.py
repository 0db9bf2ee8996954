"""Initial schema: electronic signatures and the append-only audit trail

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    signaturetype_enum = sa.Enum("training_completion", "acknowledgment", name="signature_type")

    op.create_table(
        "electronic_signatures",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("enrollment_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("signature_type", signaturetype_enum, nullable=False),
        sa.Column(
            "signature_meaning",
            sa.Text(),
            nullable=False,
            comment="Legal statement the signer attests to",
        ),
        sa.Column(
            "signed_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("signer_name", sa.String(length=255), nullable=False),
        sa.Column("signer_title", sa.String(length=255), nullable=True),
        sa.Column(
            "signature_hash",
            sa.String(length=64),
            nullable=False,
            comment="SHA-256 hex digest of signature_data",
        ),
        # json, not jsonb: the digest depends on nested key order
        sa.Column("signature_data", sa.JSON(), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("device_fingerprint", sa.String(length=128), nullable=True),
        sa.Column("geolocation", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("certificate_id", sa.String(length=255), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_by", sa.String(length=255), nullable=True),
        sa.Column("invalidation_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "is_valid OR invalidated_at IS NOT NULL",
            name="ck_electronic_signatures_invalidation_recorded",
        ),
    )
    op.create_index(
        "ix_electronic_signatures_enrollment",
        "electronic_signatures",
        ["enrollment_id", "is_valid"],
        unique=False,
    )
    op.create_index(
        "ix_electronic_signatures_user",
        "electronic_signatures",
        ["user_id", "is_valid"],
        unique=False,
    )
    op.create_index(
        "ix_electronic_signatures_type",
        "electronic_signatures",
        ["signature_type"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("resource_type", sa.String(length=100), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("old_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("new_values", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("additional_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index(
        "ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"], unique=False
    )
    op.create_index("ix_audit_logs_timestamp", "audit_logs", ["timestamp"], unique=False)

    # Audit rows are write-once; reject UPDATE and DELETE from any client.
    op.execute(
        """
CREATE OR REPLACE FUNCTION audit_logs_reject_mutation()
RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'audit_logs is append-only (% rejected)', TG_OP
        USING ERRCODE = 'insufficient_privilege';
END;
$$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
CREATE TRIGGER audit_logs_immutable
BEFORE UPDATE OR DELETE ON audit_logs
FOR EACH ROW EXECUTE FUNCTION audit_logs_reject_mutation();
        """
    )
    op.execute(
        """
CREATE TRIGGER audit_logs_no_truncate
BEFORE TRUNCATE ON audit_logs
FOR EACH STATEMENT EXECUTE FUNCTION audit_logs_reject_mutation();
        """
    )

    # Signatures may only be invalidated, never deleted or re-validated.
    op.execute(
        """
CREATE OR REPLACE FUNCTION electronic_signatures_guard()
RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'DELETE' THEN
        RAISE EXCEPTION 'electronic signatures cannot be deleted'
            USING ERRCODE = 'insufficient_privilege';
    END IF;
    IF OLD.is_valid = false AND NEW.is_valid = true THEN
        RAISE EXCEPTION 'invalidated signatures cannot be re-validated'
            USING ERRCODE = 'insufficient_privilege';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
CREATE TRIGGER electronic_signatures_guard
BEFORE UPDATE OR DELETE ON electronic_signatures
FOR EACH ROW EXECUTE FUNCTION electronic_signatures_guard();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS electronic_signatures_guard ON electronic_signatures;")
    op.execute("DROP FUNCTION IF EXISTS electronic_signatures_guard();")
    op.execute("DROP TRIGGER IF EXISTS audit_logs_no_truncate ON audit_logs;")
    op.execute("DROP TRIGGER IF EXISTS audit_logs_immutable ON audit_logs;")
    op.execute("DROP FUNCTION IF EXISTS audit_logs_reject_mutation();")

    op.drop_index("ix_audit_logs_timestamp", table_name="audit_logs")
    op.drop_index("ix_audit_logs_resource", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_electronic_signatures_type", table_name="electronic_signatures")
    op.drop_index("ix_electronic_signatures_user", table_name="electronic_signatures")
    op.drop_index("ix_electronic_signatures_enrollment", table_name="electronic_signatures")
    op.drop_table("electronic_signatures")
    sa.Enum(name="signature_type").drop(op.get_bind(), checkfirst=True)
