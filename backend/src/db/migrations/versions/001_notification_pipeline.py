"""Create notification pipeline tables.

Revision ID: 001_notification_pipeline
Revises:
Create Date: 2026-10-19

- Create notification_intents table (the outbox)
- Create push_subscriptions table (durable device registry)
- Create notification_acknowledgements table (device-confirmed receipts)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '001_notification_pipeline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add notification_intents, push_subscriptions and notification_acknowledgements."""
    bind = op.get_bind()
    dialect = bind.dialect.name

    if dialect == 'postgresql':
        json_type = postgresql.JSONB()
        now = sa.text('NOW()')
    else:
        json_type = sa.JSON()
        now = sa.text("(datetime('now'))")

    # =========================================================================
    # Create notification_intents table
    # =========================================================================
    op.create_table(
        'notification_intents',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('recipient_id', sa.String(64), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('channel', sa.String(16), nullable=False, server_default='push'),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('body', sa.Text(), nullable=False, server_default=''),
        sa.Column('payload', json_type, nullable=False),
        sa.Column('priority', sa.String(16), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(16), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=now),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=now),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'sent', 'failed')",
            name='ck_notification_intents_status',
        ),
        sa.CheckConstraint('attempts <= max_attempts', name='ck_notification_intents_attempts'),
    )
    op.create_index('ix_notification_intents_recipient_id', 'notification_intents', ['recipient_id'])
    op.create_index('ix_notification_intents_tenant_id', 'notification_intents', ['tenant_id'])
    op.create_index(
        'ix_notification_intents_claimable',
        'notification_intents',
        ['status', 'channel', 'priority', 'created_at'],
    )
    op.create_index(
        'ix_notification_intents_recipient_status',
        'notification_intents',
        ['recipient_id', 'status'],
    )
    op.create_index(
        'ix_notification_intents_scheduled_for',
        'notification_intents',
        ['scheduled_for'],
    )

    # =========================================================================
    # Create push_subscriptions table
    # =========================================================================
    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('endpoint', sa.String(1024), nullable=False, unique=True),
        sa.Column('recipient_id', sa.String(64), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('p256dh_key', sa.String(255), nullable=False),
        sa.Column('auth_key', sa.String(255), nullable=False),
        sa.Column('device_name', sa.String(100), nullable=True),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_seen', sa.DateTime(), nullable=False, server_default=now),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=now),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=now),
    )
    op.create_index('ix_push_subscriptions_recipient_id', 'push_subscriptions', ['recipient_id'])
    op.create_index('ix_push_subscriptions_tenant_id', 'push_subscriptions', ['tenant_id'])
    op.create_index(
        'ix_push_subscriptions_recipient_active',
        'push_subscriptions',
        ['recipient_id', 'is_active'],
    )

    # =========================================================================
    # Create notification_acknowledgements table
    # =========================================================================
    op.create_table(
        'notification_acknowledgements',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'notification_id',
            sa.Integer(),
            sa.ForeignKey(
                'notification_intents.id',
                name='fk_notification_acknowledgements_notification_id',
                ondelete='CASCADE',
            ),
            nullable=False,
            unique=True,
        ),
        sa.Column('recipient_id', sa.String(64), nullable=False),
        sa.Column('delivered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('clicked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=now),
    )
    op.create_index(
        'ix_notification_acknowledgements_recipient_id',
        'notification_acknowledgements',
        ['recipient_id'],
    )
    op.create_index(
        'ix_notification_acknowledgements_created_at',
        'notification_acknowledgements',
        ['created_at'],
    )

    # Partial index for the dispatcher's claim query (PostgreSQL only)
    if dialect == 'postgresql':
        op.create_index(
            'ix_notification_intents_queued_push',
            'notification_intents',
            ['priority', 'created_at'],
            postgresql_where=sa.text("status = 'queued' AND channel = 'push'"),
        )


def downgrade() -> None:
    """Remove notification pipeline tables."""
    bind = op.get_bind()
    dialect = bind.dialect.name

    op.drop_index('ix_notification_acknowledgements_created_at', table_name='notification_acknowledgements')
    op.drop_index('ix_notification_acknowledgements_recipient_id', table_name='notification_acknowledgements')
    op.drop_table('notification_acknowledgements')

    op.drop_index('ix_push_subscriptions_recipient_active', table_name='push_subscriptions')
    op.drop_index('ix_push_subscriptions_tenant_id', table_name='push_subscriptions')
    op.drop_index('ix_push_subscriptions_recipient_id', table_name='push_subscriptions')
    op.drop_table('push_subscriptions')

    if dialect == 'postgresql':
        op.drop_index('ix_notification_intents_queued_push', table_name='notification_intents')
    op.drop_index('ix_notification_intents_scheduled_for', table_name='notification_intents')
    op.drop_index('ix_notification_intents_recipient_status', table_name='notification_intents')
    op.drop_index('ix_notification_intents_claimable', table_name='notification_intents')
    op.drop_index('ix_notification_intents_tenant_id', table_name='notification_intents')
    op.drop_index('ix_notification_intents_recipient_id', table_name='notification_intents')
    op.drop_table('notification_intents')
