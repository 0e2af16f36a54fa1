"""seat inventory, holds, bookings and payments

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('vehicles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('code', name='vehicles_code_key'),
    )
    op.create_index('ix_vehicles_code', 'vehicles', ['code'], unique=False)

    op.create_table('seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('vehicle_id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=16), nullable=False),
        sa.Column('index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('seat_class', sa.String(length=32), nullable=False, server_default='regular'),
        sa.ForeignKeyConstraint(['vehicle_id'], ['vehicles.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('vehicle_id', 'label', name='uq_vehicle_seat_label'),
    )
    op.create_index('ix_seats_vehicle_id', 'seats', ['vehicle_id'], unique=False)

    op.create_table('routes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('origin', sa.String(length=128), nullable=True),
        sa.Column('destination', sa.String(length=128), nullable=True),
        sa.Column('vehicle_id', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['vehicle_id'], ['vehicles.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_routes_vehicle_id', 'routes', ['vehicle_id'], unique=False)
    op.create_index('ix_routes_active', 'routes', ['active'], unique=False)

    op.create_table('bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_ref', sa.String(length=32), nullable=False),
        sa.Column('group_ref', sa.String(length=64), nullable=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('route_id', sa.Integer(), nullable=True),
        sa.Column('vehicle_id', sa.Integer(), nullable=True),
        sa.Column('departure_date', sa.Date(), nullable=False),
        sa.Column('seat_labels', sa.JSON(), nullable=False),
        sa.Column('passengers', sa.JSON(), nullable=True),
        sa.Column('payment_ref', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='confirmed'),
        sa.Column('booked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['route_id'], ['routes.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['vehicle_id'], ['vehicles.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('booking_ref', name='bookings_booking_ref_key'),
    )
    op.create_index('ix_bookings_booking_ref', 'bookings', ['booking_ref'], unique=False)
    op.create_index('ix_bookings_group_ref', 'bookings', ['group_ref'], unique=False)
    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'], unique=False)
    op.create_index('ix_bookings_route_id', 'bookings', ['route_id'], unique=False)
    op.create_index('ix_bookings_payment_ref', 'bookings', ['payment_ref'], unique=False)
    op.create_index('ix_bookings_status', 'bookings', ['status'], unique=False)

    op.create_table('seat_departure_bookings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seat_id', sa.Integer(), nullable=False),
        sa.Column('departure_date', sa.Date(), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='SELECTED'),
        sa.Column('held_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['seat_id'], ['seats.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('seat_id', 'departure_date', name='uq_seat_departure_date'),
    )
    op.create_index('ix_seat_departure_bookings_seat_id', 'seat_departure_bookings', ['seat_id'], unique=False)
    op.create_index('ix_seat_departure_bookings_user_id', 'seat_departure_bookings', ['user_id'], unique=False)
    op.create_index('ix_seat_departure_bookings_booking_id', 'seat_departure_bookings', ['booking_id'], unique=False)
    op.create_index('ix_seat_departure_status_expiry', 'seat_departure_bookings', ['status', 'expires_at'], unique=False)

    op.create_table('payment_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('intent_id', sa.String(length=255), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='initiated'),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('intent_id', name='payment_transactions_intent_id_key'),
        sa.UniqueConstraint('reference', name='payment_transactions_reference_key'),
    )
    op.create_index('ix_payment_transactions_reference', 'payment_transactions', ['reference'], unique=False)
    op.create_index('ix_payment_transactions_user_id', 'payment_transactions', ['user_id'], unique=False)
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'], unique=False)

    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('object_type', sa.String(length=128), nullable=True),
        sa.Column('object_id', sa.String(length=128), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'], unique=False)


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('payment_transactions')
    op.drop_table('seat_departure_bookings')
    op.drop_table('bookings')
    op.drop_table('routes')
    op.drop_table('seats')
    op.drop_table('vehicles')
