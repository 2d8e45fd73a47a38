"""unique inbound records per tenant and protocol message id

Revision ID: 0003_inbound_dedupe
Revises: 0002_hot_path_indexes
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op


revision = "0003_inbound_dedupe"
down_revision = "0002_hot_path_indexes"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_message_records_inbound",
        "message_records",
        ["tenant_id", "protocol_message_id"],
        unique=True,
        postgresql_where=sa.text("status = 'received'"),
    )


def downgrade() -> None:
    op.drop_index("uq_message_records_inbound", table_name="message_records")
