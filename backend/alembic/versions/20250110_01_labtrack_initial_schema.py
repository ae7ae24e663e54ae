"""labtrack initial schema: labs, users, equipment workflow, notifications"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20250110_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column('id', sa.UUID(as_uuid=True), primary_key=True)


def _fk(name: str, target: str, ondelete: str | None = None, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.UUID(as_uuid=True), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def _stamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade() -> None:
    op.create_table(
        'labs',
        _id(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String()),
        sa.Column('location', sa.String()),
        sa.Column('lab_identifier', sa.String(), nullable=False, unique=True),
        _stamp('created_at'),
        _stamp('updated_at'),
    )
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('full_name', sa.String()),
        sa.Column('role', sa.String(), nullable=False, server_default='Lab Assistant'),
        _fk('lab_id', 'labs.id', ondelete='SET NULL'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _stamp('created_at'),
    )
    op.create_table(
        'asset_types',
        _id(),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('identifier', sa.String(), nullable=False, unique=True),
        _fk('created_by', 'users.id', ondelete='SET NULL'),
        _stamp('created_at'),
    )
    op.create_table(
        'equipment',
        _id(),
        sa.Column('asset_code', sa.String()),
        sa.Column('name', sa.String(), nullable=False),
        _fk('asset_type_id', 'asset_types.id'),
        sa.Column('invoice_number', sa.String()),
        sa.Column('description', sa.Text()),
        sa.Column('rate', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('remark', sa.Text()),
        sa.Column('is_consumable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('purchase_date', sa.Date()),
        _fk('allocated_lab', 'labs.id', nullable=False),
        _fk('created_by', 'users.id', ondelete='SET NULL'),
        _fk('approved_by_incharge', 'users.id', ondelete='SET NULL'),
        sa.Column('approved_at_incharge', sa.DateTime(timezone=True)),
        _fk('approved_by_hod', 'users.id', ondelete='SET NULL'),
        sa.Column('approved_at_hod', sa.DateTime(timezone=True)),
        sa.Column('fully_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        _stamp('created_at'),
        _stamp('updated_at'),
        sa.CheckConstraint('rate >= 0', name='ck_equipment_rate_non_negative'),
        sa.CheckConstraint('quantity >= 1', name='ck_equipment_quantity_positive'),
    )
    op.create_index('ix_equipment_asset_code', 'equipment', ['asset_code'])
    op.create_index('ix_equipment_allocated_lab', 'equipment', ['allocated_lab'])
    op.create_index('ix_equipment_created_by', 'equipment', ['created_by'])
    op.create_index('ix_equipment_fully_approved', 'equipment', ['fully_approved'])

    op.create_table(
        'deleted_equipment',
        _id(),
        _fk('equipment_id', 'equipment.id', ondelete='SET NULL'),
        sa.Column('name', sa.String(), nullable=False),
        _fk('allocated_lab', 'labs.id'),
        sa.Column('snapshot', sa.JSON()),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        _fk('deleted_by', 'users.id', ondelete='SET NULL'),
        _stamp('deleted_at'),
        _fk('ratified_by', 'users.id', ondelete='SET NULL'),
        sa.Column('ratified_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_deleted_equipment_status', 'deleted_equipment', ['status'])

    op.create_table(
        'transfers',
        _id(),
        _fk('equipment_id', 'equipment.id', ondelete='CASCADE', nullable=False),
        _fk('from_lab', 'labs.id', nullable=False),
        _fk('to_lab', 'labs.id', nullable=False),
        _fk('initiated_by', 'users.id', ondelete='SET NULL'),
        _stamp('initiated_at'),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        _fk('received_by', 'users.id', ondelete='SET NULL'),
        sa.Column('received_at', sa.DateTime(timezone=True)),
        _stamp('updated_at'),
    )
    for column in ('equipment_id', 'from_lab', 'to_lab', 'status'):
        op.create_index(f'ix_transfers_{column}', 'transfers', [column])

    op.create_table(
        'issues',
        _id(),
        _fk('equipment_id', 'equipment.id', ondelete='CASCADE', nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        _fk('reported_by', 'users.id', ondelete='SET NULL'),
        _stamp('reported_at'),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        _fk('resolved_by', 'users.id', ondelete='SET NULL'),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Column('remark', sa.Text()),
        sa.Column('cost_required', sa.Numeric(10, 2)),
        _stamp('updated_at'),
    )
    for column in ('equipment_id', 'reported_by', 'status'):
        op.create_index(f'ix_issues_{column}', 'issues', [column])

    op.create_table(
        'notifications',
        _id(),
        sa.Column('event_id', sa.UUID(as_uuid=True), nullable=False),
        _fk('user_id', 'users.id', ondelete='CASCADE', nullable=False),
        _fk('actor_id', 'users.id', ondelete='SET NULL'),
        sa.Column('action_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.UUID(as_uuid=True)),
        sa.Column('entity_name', sa.String()),
        sa.Column('message', sa.String()),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        _stamp('created_at'),
        sa.UniqueConstraint('event_id', 'user_id', name='uq_notifications_event_recipient'),
    )
    for column in ('event_id', 'user_id', 'action_type', 'entity_type', 'is_read', 'created_at'):
        op.create_index(f'ix_notifications_{column}', 'notifications', [column])

    op.create_table(
        'activity_logs',
        _id(),
        _fk('user_id', 'users.id', ondelete='SET NULL'),
        sa.Column('action_type', sa.String(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.UUID(as_uuid=True)),
        sa.Column('entity_name', sa.String()),
        sa.Column('old_values', sa.JSON()),
        sa.Column('new_values', sa.JSON()),
        sa.Column('changes', sa.JSON()),
        sa.Column('severity_level', sa.String(), nullable=False, server_default='info'),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        _stamp('created_at'),
    )
    for column in ('user_id', 'action_type', 'entity_type', 'created_at'):
        op.create_index(f'ix_activity_logs_{column}', 'activity_logs', [column])


def downgrade() -> None:
    for table in (
        'activity_logs',
        'notifications',
        'issues',
        'transfers',
        'deleted_equipment',
        'equipment',
        'asset_types',
        'users',
        'labs',
    ):
        op.drop_table(table)
