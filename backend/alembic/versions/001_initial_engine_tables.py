"""Initial entry and verification lifecycle tables

Revision ID: 001_initial_engine
Revises:
Create Date: 2026-10-19

Creates all tables for:
- Competitions, profiles and entries (cooldown, attempt window, outcomes)
- Verifications and witness confirmations (win claims)
- Entry access tokens (magic links)
- Staff codes and the redemption audit trail
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_engine'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ==========================================================================
    # Create Enums
    # ==========================================================================

    competition_status_enum = postgresql.ENUM(
        'SCHEDULED', 'ACTIVE', 'ENDED',
        name='competitionstatus',
        create_type=False,
    )
    competition_status_enum.create(op.get_bind(), checkfirst=True)

    entry_status_enum = postgresql.ENUM(
        'pending', 'active', 'paid', 'completed', 'expired',
        name='entrystatus',
        create_type=False,
    )
    entry_status_enum.create(op.get_bind(), checkfirst=True)

    # Shared by outcome_self and outcome_official
    entry_outcome_enum = postgresql.ENUM(
        'win', 'miss', 'auto_miss',
        name='entryoutcome',
        create_type=False,
    )
    entry_outcome_enum.create(op.get_bind(), checkfirst=True)

    entry_path_enum = postgresql.ENUM(
        'instant', 'magic_link', 'staff_code',
        name='entrypath',
        create_type=False,
    )
    entry_path_enum.create(op.get_bind(), checkfirst=True)

    verification_status_enum = postgresql.ENUM(
        'initiated', 'pending', 'under_review', 'verified', 'rejected',
        name='verificationstatus',
        create_type=False,
    )
    verification_status_enum.create(op.get_bind(), checkfirst=True)

    # ==========================================================================
    # Competitions, Profiles, Entries
    # ==========================================================================

    op.create_table(
        'competitions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('entry_fee', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('commission_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', competition_status_enum, nullable=False, server_default='SCHEDULED'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_competitions_status', 'competitions', ['status'], unique=False)

    op.create_table(
        'profiles',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('age_years', sa.Integer(), nullable=True),
        sa.Column('handicap', sa.Integer(), nullable=True),
        sa.Column('phone_e164', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'], unique=True)

    op.create_table(
        'entries',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('competition_id', sa.UUID(), nullable=False),
        sa.Column('player_id', sa.UUID(), nullable=False),
        sa.Column('entry_path', entry_path_enum, nullable=False, server_default='instant'),
        sa.Column('window_minutes', sa.Integer(), nullable=False),
        sa.Column('entry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('amount_minor', sa.Integer(), nullable=True),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_provider', sa.String(length=50), nullable=True),
        sa.Column('status', entry_status_enum, nullable=False, server_default='pending'),
        sa.Column('attempt_window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempt_window_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome_self', entry_outcome_enum, nullable=True),
        sa.Column('outcome_reported_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome_official', entry_outcome_enum, nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('terms_accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('terms_version', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['competition_id'], ['competitions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_entries_competition_id', 'entries', ['competition_id'], unique=False)
    op.create_index('ix_entries_player_id', 'entries', ['player_id'], unique=False)
    op.create_index('ix_entries_status', 'entries', ['status'], unique=False)
    op.create_index(
        'ix_entries_player_competition_date', 'entries',
        ['player_id', 'competition_id', 'entry_date'], unique=False,
    )
    op.create_index(
        'ix_entries_unresolved_window', 'entries',
        ['outcome_self', 'attempt_window_end'], unique=False,
    )

    # ==========================================================================
    # Verifications and Witnesses
    # ==========================================================================

    op.create_table(
        'verifications',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('entry_id', sa.UUID(), nullable=False),
        sa.Column('status', verification_status_enum, nullable=False, server_default='pending'),
        sa.Column('evidence_captured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('selfie_url', sa.String(length=2000), nullable=True),
        sa.Column('id_document_url', sa.String(length=2000), nullable=True),
        sa.Column('handicap_proof_url', sa.String(length=2000), nullable=True),
        sa.Column('video_url', sa.String(length=2000), nullable=True),
        sa.Column('witnesses', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('social_consent', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('auto_miss_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('auto_miss_applied', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('review_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('witness_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('verified_by', sa.UUID(), nullable=True),
        sa.Column('decision_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['entry_id'], ['entries.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entry_id'),
    )
    op.create_index('ix_verifications_status', 'verifications', ['status'], unique=False)
    op.create_index('ix_verifications_auto_miss_at', 'verifications', ['auto_miss_at'], unique=False)

    op.create_table(
        'witness_confirmations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('verification_id', sa.UUID(), nullable=False),
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('witness_name', sa.String(length=200), nullable=False),
        sa.Column('witness_email', sa.String(length=255), nullable=False),
        sa.Column('witness_phone', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['verification_id'], ['verifications.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_witness_confirmations_verification_id', 'witness_confirmations', ['verification_id'], unique=False)
    op.create_index('ix_witness_confirmations_token', 'witness_confirmations', ['token'], unique=True)

    # ==========================================================================
    # Entry Access (magic links, staff codes)
    # ==========================================================================

    op.create_table(
        'entry_access_tokens',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('profile_id', sa.UUID(), nullable=True),
        sa.Column('entry_id', sa.UUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['entry_id'], ['entries.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_entry_access_tokens_token', 'entry_access_tokens', ['token'], unique=True)
    op.create_index('ix_entry_access_tokens_email', 'entry_access_tokens', ['email'], unique=False)

    op.create_table(
        'staff_codes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('code_prefix', sa.String(length=20), nullable=False),
        sa.Column('code_suffix', sa.String(length=20), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('valid_from', sa.DateTime(timezone=True), nullable=True),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code_prefix', 'code_suffix', name='uq_staff_codes_prefix_suffix'),
    )

    # Append-only; entry_id kept without FK so attempts against unknown entries are audited too
    op.create_table(
        'staff_code_attempts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('staff_code_id', sa.UUID(), nullable=True),
        sa.Column('entry_id', sa.UUID(), nullable=True),
        sa.Column('code_entered', sa.String(length=50), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('reason', sa.String(length=50), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['staff_code_id'], ['staff_codes.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_staff_code_attempts_entry_time', 'staff_code_attempts', ['entry_id', 'attempted_at'], unique=False)
    op.create_index('ix_staff_code_attempts_ip_time', 'staff_code_attempts', ['ip_address', 'attempted_at'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('staff_code_attempts')
    op.drop_table('staff_codes')
    op.drop_table('entry_access_tokens')
    op.drop_table('witness_confirmations')
    op.drop_table('verifications')
    op.drop_table('entries')
    op.drop_table('profiles')
    op.drop_table('competitions')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS verificationstatus")
    op.execute("DROP TYPE IF EXISTS entrypath")
    op.execute("DROP TYPE IF EXISTS entryoutcome")
    op.execute("DROP TYPE IF EXISTS entrystatus")
    op.execute("DROP TYPE IF EXISTS competitionstatus")
