"""
Initial schema: tenants, roles, employees, assets, versions, processing queue, flow chains, workflows
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
# revision identifiers, used by Alembic.
revision = '202610190900_initial_assetflow_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(), nullable=nullable, server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('identifier', sa.String(length=255), nullable=False, unique=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp('created_at', nullable=True),
        _timestamp('updated_at', nullable=True),
    )
    op.create_index('ix_tenants_active', 'tenants', ['active'])

    op.create_table(
        'roles',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        _timestamp('created_at'),
        sa.UniqueConstraint('tenant_id', 'name', name='uq_roles_tenant_name'),
    )
    op.create_index('ix_roles_tenant_id', 'roles', ['tenant_id'])

    op.create_table(
        'employees',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('role_id', sa.String(length=36), sa.ForeignKey('roles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('is_admin', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('true')),
        _timestamp('created_at'),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_employees_tenant_email'),
    )
    op.create_index('ix_employees_tenant_id', 'employees', ['tenant_id'])
    op.create_index('ix_employees_role_id', 'employees', ['role_id'])

    op.create_table(
        'assets',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_type', sa.String(length=16), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=False),
        sa.Column('current_version', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('active_storage_key', sa.Text, nullable=True),
        sa.Column('playback_url', sa.Text, nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='uploading'),
        sa.Column('workflow_status', sa.String(length=32), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.CheckConstraint("asset_type in ('VIDEO','DOCUMENT')", name='ck_assets_asset_type'),
        sa.CheckConstraint("status in ('uploading','processing','ready','error')", name='ck_assets_status'),
    )
    op.create_index('ix_assets_tenant_id', 'assets', ['tenant_id'])
    op.create_index('idx_assets_tenant_type', 'assets', ['tenant_id', 'asset_type'])

    op.create_table(
        'asset_versions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('parent_asset_id', sa.String(length=36), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_number', sa.Integer, nullable=False),
        sa.Column('storage_key', sa.Text, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='READY'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.text('false')),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('uploaded_by', sa.String(length=36), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        sa.Column('file_size_bytes', sa.BigInteger, nullable=False, server_default=sa.text('0')),
        sa.Column('playback_url', sa.Text, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        _timestamp('created_at'),
        sa.UniqueConstraint('parent_asset_id', 'version_number', name='uq_asset_versions_parent_number'),
        sa.CheckConstraint(
            "status in ('UPLOADING','PROCESSING','READY','FAILED','DELETED')",
            name='ck_asset_versions_status',
        ),
    )
    op.create_index('idx_asset_versions_parent', 'asset_versions', ['parent_asset_id'])
    op.create_index(
        'uq_asset_versions_active_per_parent',
        'asset_versions',
        ['parent_asset_id'],
        unique=True,
        postgresql_where=sa.text('is_active')
    )

    op.create_table(
        'processing_queue_items',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=True),
        sa.Column('asset_id', sa.String(length=36), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_id', sa.String(length=36), sa.ForeignKey('asset_versions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('stage', sa.String(length=32), nullable=False, server_default='compress'),
        sa.Column('source_key', sa.Text, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('max_attempts', sa.Integer, nullable=False, server_default=sa.text('3')),
        sa.Column('priority', sa.Integer, nullable=False, server_default=sa.text('50')),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('output_key', sa.Text, nullable=True),
        sa.Column('output_size', sa.BigInteger, nullable=True),
        sa.Column('claimed_by', sa.Text, nullable=True),
        _timestamp('created_at'),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status in ('PENDING','PROCESSING','COMPLETED','FAILED')",
            name='ck_processing_queue_status',
        ),
    )
    op.create_index('ix_processing_queue_items_tenant_id', 'processing_queue_items', ['tenant_id'])
    op.create_index('idx_processing_queue_status_priority', 'processing_queue_items', ['status', 'priority', 'created_at'])
    op.create_index('idx_processing_queue_asset', 'processing_queue_items', ['asset_id'])
    op.create_index(
        'uq_processing_queue_open_per_asset',
        'processing_queue_items',
        ['asset_id'],
        unique=True,
        postgresql_where=sa.text("status in ('PENDING','PROCESSING')")
    )

    op.create_table(
        'flow_chains',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('ix_flow_chains_tenant_id', 'flow_chains', ['tenant_id'])

    op.create_table(
        'flow_steps',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('chain_id', sa.String(length=36), sa.ForeignKey('flow_chains.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('role_id', sa.String(length=36), sa.ForeignKey('roles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('sequence', sa.Integer, nullable=False, server_default=sa.text('0')),
        _timestamp('created_at'),
    )
    op.create_index('ix_flow_steps_chain_id', 'flow_steps', ['chain_id'])

    op.create_table(
        'flow_transitions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('from_step_id', sa.String(length=36), sa.ForeignKey('flow_steps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_step_id', sa.String(length=36), sa.ForeignKey('flow_steps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('condition', sa.String(length=64), nullable=False, server_default='SUCCESS'),
        sa.UniqueConstraint('from_step_id', 'to_step_id', 'condition', name='uq_flow_transitions_edge'),
    )
    op.create_index('ix_flow_transitions_from_step_id', 'flow_transitions', ['from_step_id'])
    op.create_index('ix_flow_transitions_to_step_id', 'flow_transitions', ['to_step_id'])

    op.create_table(
        'workflow_states',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('tenant_id', sa.String(length=36), sa.ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_id', sa.String(length=36), sa.ForeignKey('assets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('asset_type', sa.String(length=16), nullable=False),
        sa.Column('flow_chain_id', sa.String(length=36), sa.ForeignKey('flow_chains.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('current_step_id', sa.String(length=36), sa.ForeignKey('flow_steps.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('assigned_to_role_id', sa.String(length=36), sa.ForeignKey('roles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('assigned_to_employee_id', sa.String(length=36), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='in_progress'),
        _timestamp('started_at'),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        _timestamp('updated_at'),
        sa.UniqueConstraint('asset_id', 'asset_type', name='uq_workflow_states_asset'),
        sa.CheckConstraint("status in ('in_progress','completed')", name='ck_workflow_states_status'),
    )
    op.create_index('ix_workflow_states_tenant_id', 'workflow_states', ['tenant_id'])
    op.create_index('ix_workflow_states_flow_chain_id', 'workflow_states', ['flow_chain_id'])

    op.create_table(
        'workflow_history',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('workflow_state_id', sa.String(length=36), sa.ForeignKey('workflow_states.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.String(length=36), sa.ForeignKey('employees.id', ondelete='SET NULL'), nullable=True),
        sa.Column('from_step_id', sa.String(length=36), sa.ForeignKey('flow_steps.id', ondelete='SET NULL'), nullable=True),
        sa.Column('to_step_id', sa.String(length=36), sa.ForeignKey('flow_steps.id', ondelete='SET NULL'), nullable=True),
        sa.Column('comment', sa.Text, nullable=True),
        _timestamp('created_at'),
        sa.CheckConstraint(
            "action in ('ADVANCE','MANUAL_APPROVAL','REJECT','ASSIGN','REASSIGN')",
            name='ck_workflow_history_action',
        ),
    )
    op.create_index('ix_workflow_history_workflow_state_id', 'workflow_history', ['workflow_state_id'])


def downgrade():
    op.drop_index('ix_workflow_history_workflow_state_id', table_name='workflow_history')
    op.drop_table('workflow_history')
    op.drop_index('ix_workflow_states_flow_chain_id', table_name='workflow_states')
    op.drop_index('ix_workflow_states_tenant_id', table_name='workflow_states')
    op.drop_table('workflow_states')
    op.drop_index('ix_flow_transitions_to_step_id', table_name='flow_transitions')
    op.drop_index('ix_flow_transitions_from_step_id', table_name='flow_transitions')
    op.drop_table('flow_transitions')
    op.drop_index('ix_flow_steps_chain_id', table_name='flow_steps')
    op.drop_table('flow_steps')
    op.drop_index('ix_flow_chains_tenant_id', table_name='flow_chains')
    op.drop_table('flow_chains')
    op.drop_index('uq_processing_queue_open_per_asset', table_name='processing_queue_items')
    op.drop_index('idx_processing_queue_asset', table_name='processing_queue_items')
    op.drop_index('idx_processing_queue_status_priority', table_name='processing_queue_items')
    op.drop_index('ix_processing_queue_items_tenant_id', table_name='processing_queue_items')
    op.drop_table('processing_queue_items')
    op.drop_index('uq_asset_versions_active_per_parent', table_name='asset_versions')
    op.drop_index('idx_asset_versions_parent', table_name='asset_versions')
    op.drop_table('asset_versions')
    op.drop_index('idx_assets_tenant_type', table_name='assets')
    op.drop_index('ix_assets_tenant_id', table_name='assets')
    op.drop_table('assets')
    op.drop_index('ix_employees_role_id', table_name='employees')
    op.drop_index('ix_employees_tenant_id', table_name='employees')
    op.drop_table('employees')
    op.drop_index('ix_roles_tenant_id', table_name='roles')
    op.drop_table('roles')
    op.drop_index('ix_tenants_active', table_name='tenants')
    op.drop_table('tenants')
