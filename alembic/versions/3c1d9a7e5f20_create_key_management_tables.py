"""create key management tables

Creates the tables of the key-management service:
- users and files (referenced by keys and envelopes)
- key_encryption_keys with one primary key per user (partial unique index)
- encrypted_deks, one envelope per (file, KEK)
- share_groups with their recipient and file association tables

Revision ID: 3c1d9a7e5f20
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from schema_config import get_schema


# revision identifiers, used by Alembic.
revision: str = '3c1d9a7e5f20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    schema = get_schema()

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        schema=schema
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True, schema=schema)

    op.create_table(
        'files',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(1024), nullable=False),
        sa.Column('storage_path', sa.String(1024), nullable=False),
        sa.Column('mime_type', sa.String(255), nullable=True),
        sa.Column('size', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['owner_id'], [f'{schema}.users.id'], ondelete='CASCADE'),
        schema=schema
    )
    op.create_index('idx_files_owner_id', 'files', ['owner_id'], schema=schema)

    op.create_table(
        'key_encryption_keys',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('alias', sa.String(256), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kms_key_id', sa.String(2048), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rotated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], [f'{schema}.users.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('kms_key_id', name='uq_kek_kms_key_id'),
        sa.UniqueConstraint('user_id', 'alias', name='uq_kek_user_alias'),
        schema=schema
    )
    op.create_index('idx_kek_user_id', 'key_encryption_keys', ['user_id'], schema=schema)

    # At most one primary key per user
    op.execute(f"""
        CREATE UNIQUE INDEX idx_kek_one_primary_per_user
        ON {schema}.key_encryption_keys (user_id)
        WHERE is_primary = true
    """)

    op.create_table(
        'encrypted_deks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('file_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('kek_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('dek_ciphertext', postgresql.BYTEA(), nullable=False),
        sa.Column('iv', postgresql.BYTEA(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['file_id'], [f'{schema}.files.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['kek_id'], [f'{schema}.key_encryption_keys.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('file_id', 'kek_id', name='uq_encrypted_dek_file_kek'),
        schema=schema
    )
    op.create_index('idx_encrypted_dek_kek_id', 'encrypted_deks', ['kek_id'], schema=schema)

    op.create_table(
        'share_groups',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['owner_id'], [f'{schema}.users.id'], ondelete='CASCADE'),
        schema=schema
    )
    op.create_index('idx_share_groups_owner_id', 'share_groups', ['owner_id'], schema=schema)

    op.create_table(
        'share_group_recipients',
        sa.Column('share_group_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.ForeignKeyConstraint(['share_group_id'], [f'{schema}.share_groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], [f'{schema}.users.id'], ondelete='CASCADE'),
        schema=schema
    )

    op.create_table(
        'share_group_files',
        sa.Column('share_group_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('file_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.ForeignKeyConstraint(['share_group_id'], [f'{schema}.share_groups.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['file_id'], [f'{schema}.files.id'], ondelete='CASCADE'),
        schema=schema
    )


def downgrade() -> None:
    schema = get_schema()

    op.drop_table('share_group_files', schema=schema)
    op.drop_table('share_group_recipients', schema=schema)
    op.drop_index('idx_share_groups_owner_id', table_name='share_groups', schema=schema)
    op.drop_table('share_groups', schema=schema)
    op.drop_index('idx_encrypted_dek_kek_id', table_name='encrypted_deks', schema=schema)
    op.drop_table('encrypted_deks', schema=schema)
    op.execute(f"DROP INDEX IF EXISTS {schema}.idx_kek_one_primary_per_user")
    op.drop_index('idx_kek_user_id', table_name='key_encryption_keys', schema=schema)
    op.drop_table('key_encryption_keys', schema=schema)
    op.drop_index('idx_files_owner_id', table_name='files', schema=schema)
    op.drop_table('files', schema=schema)
    op.drop_index('ix_users_email', table_name='users', schema=schema)
    op.drop_table('users', schema=schema)
