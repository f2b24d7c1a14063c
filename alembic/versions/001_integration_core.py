"""001 Integration core schema

Revision ID: 001_integration_core
Revises:
Create Date: 2026-10-16

- Payload store (ota_payloads)
- Durable bus log (bus_events, bus_deliveries, dead_letter_events)
- Amendments and booking status transitions
- Channel configuration, retention overrides, stop-sell windows
- Integration alerts and audit logs
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_integration_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # 1. Payload store
    op.create_table(
        'ota_payloads',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payload_id', sa.String(64), nullable=False, unique=True),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('parent_payload_id', sa.String(64), nullable=True),
        sa.Column('event_id', sa.String(36), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=True),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('channel_event_id', sa.String(255), nullable=True),
        sa.Column('method', sa.String(10), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('path', sa.String(500), nullable=True),
        sa.Column('query', sa.JSON(), nullable=True),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('raw_body', sa.LargeBinary(), nullable=True),
        sa.Column('body_size', sa.Integer(), server_default='0'),
        sa.Column('stored_size', sa.Integer(), server_default='0'),
        sa.Column('body_truncated', sa.Boolean(), server_default=sa.false()),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('content_type', sa.String(100), nullable=True),
        sa.Column('parsed_fields', sa.JSON(), nullable=True),
        sa.Column('booking_id', sa.String(64), nullable=True),
        sa.Column('reservation_id', sa.String(128), nullable=True),
        sa.Column('guest_name', sa.String(255), nullable=True),
        sa.Column('operation', sa.String(50), nullable=True),
        sa.Column('amount', sa.Float(), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_headers', sa.JSON(), nullable=True),
        sa.Column('response_body', sa.LargeBinary(), nullable=True),
        sa.Column('response_time_ms', sa.Float(), nullable=True),
        sa.Column('transport_error', sa.Text(), nullable=True),
        sa.Column('processing_status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('contains_pii', sa.Boolean(), server_default=sa.false()),
        sa.Column('contains_payment_data', sa.Boolean(), server_default=sa.false()),
        sa.Column('data_level', sa.String(20), nullable=False, server_default='public'),
        sa.Column('priority', sa.String(10), server_default='medium'),
        sa.Column('authenticated', sa.Boolean(), server_default=sa.false()),
        sa.Column('signature_valid', sa.Boolean(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('retention_policy', sa.String(50), nullable=True),
        sa.Column('archive_after', sa.DateTime(), nullable=True),
        sa.Column('delete_after', sa.DateTime(), nullable=True),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('archive_location', sa.Text(), nullable=True),
        sa.Column('last_audit_score', sa.Float(), nullable=True),
        sa.Column('last_audit_risk', sa.String(20), nullable=True),
        sa.Column('last_audited_at', sa.DateTime(), nullable=True),
        sa.Column('quarantined', sa.Boolean(), server_default=sa.false()),
        sa.Column('quarantine_reason', sa.Text(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('channel', 'channel_event_id', name='uq_payload_channel_event'),
    )
    op.create_index('ix_payload_correlation', 'ota_payloads', ['correlation_id'])
    op.create_index('ix_payload_booking', 'ota_payloads', ['booking_id'])
    op.create_index('ix_payload_channel_created', 'ota_payloads', ['channel', 'created_at'])
    op.create_index('ix_payload_status', 'ota_payloads', ['processing_status'])
    op.create_index('ix_payload_data_level', 'ota_payloads', ['data_level'])
    op.create_index('ix_payload_retention', 'ota_payloads', ['archived_at', 'archive_after'])
    op.create_index('ix_payload_delete_after', 'ota_payloads', ['delete_after'])

    # 2. Bus log
    op.create_table(
        'bus_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('originator', sa.String(100), server_default='system'),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('deadline_seconds', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_bus_event_correlation', 'bus_events', ['correlation_id'])
    op.create_index('ix_bus_event_kind', 'bus_events', ['kind', 'created_at'])

    op.create_table(
        'bus_deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('event_id', sa.String(36),
                  sa.ForeignKey('bus_events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('subscription', sa.String(100), nullable=False),
        sa.Column('partition', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('visible_after', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_delivery_subscription_status', 'bus_deliveries', ['subscription', 'status'])
    op.create_index('ix_delivery_event', 'bus_deliveries', ['event_id'])

    op.create_table(
        'dead_letter_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(36), nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('subscription', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('originator', sa.String(100), nullable=True),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('reason', sa.String(100), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('replayed_at', sa.DateTime(), nullable=True),
        sa.Column('replayed_event_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_dead_letter_kind_correlation', 'dead_letter_events', ['kind', 'correlation_id'])
    op.create_index('ix_dead_letter_created', 'dead_letter_events', ['created_at'])

    # 3. Amendments
    op.create_table(
        'amendments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('amendment_id', sa.String(40), nullable=False, unique=True),
        sa.Column('channel_amendment_id', sa.String(255), nullable=False),
        sa.Column('booking_id', sa.String(64), nullable=True),
        sa.Column('channel_reservation_id', sa.String(128), nullable=True),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('payload_id', sa.String(64), nullable=True),
        sa.Column('amendment_type', sa.String(40), nullable=False),
        sa.Column('state', sa.String(30), nullable=False, server_default='pending'),
        sa.Column('state_history', sa.JSON(), nullable=False),
        sa.Column('requested_changes', sa.JSON(), nullable=False),
        sa.Column('original_snapshot', sa.JSON(), nullable=True),
        sa.Column('applied_changes', sa.JSON(), nullable=True),
        sa.Column('requested_by_channel', sa.String(20), nullable=False),
        sa.Column('requested_by_guest_id', sa.String(128), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('requires_manual_approval', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('manual_approval_reasons', sa.JSON(), nullable=True),
        sa.Column('priority', sa.String(10), server_default='medium'),
        sa.Column('decision_reason', sa.JSON(), nullable=True),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('decided_by', sa.String(100), nullable=True),
        sa.Column('validation_bypassed', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('requested_by_channel', 'channel_amendment_id', name='uq_amendment_channel_id'),
    )
    op.create_index('ix_amendment_booking', 'amendments', ['booking_id'])
    op.create_index('ix_amendment_state_requested', 'amendments', ['state', 'requested_at'])

    op.create_table(
        'booking_status_transitions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(64), nullable=False),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('to_status', sa.String(30), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('actor', sa.String(100), nullable=True),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('amendment_id', sa.String(40), nullable=True),
        sa.Column('validation_bypassed', sa.Boolean(), server_default=sa.false()),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_transition_booking', 'booking_status_transitions', ['booking_id', 'created_at'])
    op.create_index('ix_transition_correlation', 'booking_status_transitions', ['correlation_id'])

    # 4. Tenant configuration
    op.create_table(
        'channel_configurations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(64), nullable=False),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('credentials', sa.JSON(), nullable=True),
        sa.Column('external_hotel_id', sa.String(128), nullable=True),
        sa.Column('base_url', sa.String(500), nullable=True),
        sa.Column('endpoint_overrides', sa.JSON(), nullable=True),
        sa.Column('language', sa.String(10), server_default='en'),
        sa.Column('currency', sa.String(3), server_default='USD'),
        sa.Column('requests_per_second', sa.Float(), nullable=True),
        sa.Column('burst', sa.Integer(), nullable=True),
        sa.Column('deadline_seconds', sa.Float(), nullable=True),
        sa.Column('signature_secret', sa.String(255), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_count', sa.Integer(), server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('hotel_id', 'channel', name='uq_channel_config_hotel_channel'),
    )
    op.create_index('ix_channel_config_channel', 'channel_configurations', ['channel', 'enabled'])

    op.create_table(
        'tenant_retention_policies',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(64), nullable=False),
        sa.Column('data_level', sa.String(20), nullable=False),
        sa.Column('active_days', sa.Integer(), nullable=False),
        sa.Column('archive_after_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('hotel_id', 'data_level', name='uq_retention_hotel_level'),
    )

    op.create_table(
        'stop_sell_windows',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('hotel_id', sa.String(64), nullable=False),
        sa.Column('room_type', sa.String(64), nullable=False),
        sa.Column('night', sa.Date(), nullable=False),
        sa.Column('stop_sell', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('hotel_id', 'room_type', 'night', name='uq_stop_sell_night'),
    )

    # 5. Alerts and audit
    op.create_table(
        'integration_alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('channel', sa.String(20), nullable=True),
        sa.Column('hotel_id', sa.String(64), nullable=True),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('alert_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), server_default='medium'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(20), server_default='open'),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_by_id', sa.String(100), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_alert_status', 'integration_alerts', ['status', 'created_at'])
    op.create_index('ix_alert_type', 'integration_alerts', ['alert_type', 'severity'])
    op.create_index('ix_alert_channel', 'integration_alerts', ['channel', 'hotel_id', 'status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('actor_id', sa.String(100), nullable=True),
        sa.Column('actor_role', sa.String(30), nullable=True),
        sa.Column('activity_type', sa.String(40), nullable=False),
        sa.Column('entity_type', sa.String(20), nullable=False),
        sa.Column('entity_id', sa.String(64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_created', 'audit_logs', ['created_at'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('integration_alerts')
    op.drop_table('stop_sell_windows')
    op.drop_table('tenant_retention_policies')
    op.drop_table('channel_configurations')
    op.drop_table('booking_status_transitions')
    op.drop_table('amendments')
    op.drop_table('dead_letter_events')
    op.drop_table('bus_deliveries')
    op.drop_table('bus_events')
    op.drop_table('ota_payloads')
