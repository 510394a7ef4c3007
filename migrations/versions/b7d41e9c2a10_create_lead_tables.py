"""create leads, lead_activities and invoice_revisions

Revision ID: b7d41e9c2a10
Revises:
Create Date: 2026-10-19 09:12:44.518203

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7d41e9c2a10'
down_revision = None
branch_labels = None
depends_on = None


def _track_columns(prefix, amount, quote_sent, invoice, payment, reminder, completed, declined):
    """Columns of one workflow track. Both tracks share this shape."""
    ts = lambda name: sa.Column(name, sa.DateTime(timezone=True), nullable=True)  # noqa: E731
    return [
        sa.Column(amount, sa.Integer(), nullable=True),
        ts(quote_sent),
        ts(f'{prefix}quote_whatsapp_sent_at'),
        ts(f'{prefix}quote_viewed_at'),
        ts(f'{prefix}proceed_confirmed_at'),
        ts(f'{prefix}quote_approved_at'),
        sa.Column(f'{prefix}approved', sa.Boolean(), nullable=True),
        ts(f'{prefix}quote_declined_at'),
        sa.Column(f'{prefix}quote_decline_reason', sa.Text(), nullable=True),
        ts(f'{prefix}quote_questions_at'),
        sa.Column(f'{prefix}quote_questions_reason', sa.Text(), nullable=True),
        sa.Column(f'{invoice}_number', sa.String(length=64), nullable=True),
        sa.Column(f'{invoice}_version', sa.Integer(), nullable=True),
        sa.Column(f'{invoice}_amount_aed', sa.Integer(), nullable=True),
        ts(f'{invoice}_sent_at'),
        sa.Column(f'{invoice}_payment_link', sa.String(length=500), nullable=True),
        ts(payment),
        ts(f'{reminder}_sent_at'),
        sa.Column(f'{reminder}_count', sa.Integer(), server_default='0', nullable=False),
        ts(completed),
        ts(declined),
        sa.Column(f'{prefix}decline_reason', sa.Text(), nullable=True),
        sa.Column(f'{prefix}decline_stage', sa.String(length=100), nullable=True),
    ]


def upgrade():
    op.create_table(
        'leads',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('reference_code', sa.String(length=40), nullable=True),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('whatsapp', sa.String(length=20), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('nationality', sa.String(length=100), nullable=True),
        sa.Column('residence_country', sa.String(length=100), nullable=True),
        sa.Column('setup_type', sa.String(length=20), nullable=False),
        sa.Column('service_required', sa.String(length=255), nullable=True),
        sa.Column('activity', sa.String(length=255), nullable=True),
        sa.Column('shareholders_count', sa.Integer(), nullable=True),
        sa.Column('visa_count', sa.Integer(), nullable=True),
        sa.Column('service_details', sa.JSON(), nullable=True),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('bank_details', sa.JSON(), nullable=True),
        sa.Column('agent_contacted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('feasible', sa.Boolean(), nullable=True),
        sa.Column('google_review_requested_at', sa.DateTime(timezone=True), nullable=True),
        *_track_columns(
            prefix='',
            amount='quoted_amount_aed',
            quote_sent='company_quote_sent_at',
            invoice='company_invoice',
            payment='payment_received_at',
            reminder='payment_reminder',
            completed='company_completed_at',
            declined='declined_at',
        ),
        *_track_columns(
            prefix='bank_',
            amount='bank_quoted_amount_aed',
            quote_sent='bank_quote_sent_at',
            invoice='bank_invoice',
            payment='bank_payment_received_at',
            reminder='bank_payment_reminder',
            completed='bank_completed_at',
            declined='bank_declined_at',
        ),
        sa.Column('row_version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_code'),
    )
    op.create_index('ix_leads_setup_type', 'leads', ['setup_type'], unique=False)
    op.create_index('ix_leads_created_at', 'leads', ['created_at'], unique=False)

    op.create_table(
        'lead_activities',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('lead_id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('lead_activities', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_lead_activities_lead_id'), ['lead_id'], unique=False)

    op.create_table(
        'invoice_revisions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('lead_id', sa.String(length=36), nullable=False),
        sa.Column('track', sa.String(length=20), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('amount_aed', sa.Integer(), nullable=False),
        sa.Column('payment_link', sa.String(length=500), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.ForeignKeyConstraint(['lead_id'], ['leads.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('lead_id', 'track', 'version', name='uq_invoice_revisions_lead_track_version'),
    )
    with op.batch_alter_table('invoice_revisions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_invoice_revisions_lead_id'), ['lead_id'], unique=False)


def downgrade():
    with op.batch_alter_table('invoice_revisions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_invoice_revisions_lead_id'))
    op.drop_table('invoice_revisions')

    with op.batch_alter_table('lead_activities', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_lead_activities_lead_id'))
    op.drop_table('lead_activities')

    op.drop_index('ix_leads_created_at', table_name='leads')
    op.drop_index('ix_leads_setup_type', table_name='leads')
    op.drop_table('leads')
