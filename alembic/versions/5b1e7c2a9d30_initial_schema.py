"""initial_schema

Revision ID: 5b1e7c2a9d30
Revises:
Create Date: 2026-10-18 09:40:12.118204

Schema for the AI engine:
- Product catalog is NOT stored locally (searched through the catalog API)
- Only stores: managed provider credentials, per-page bot settings
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5b1e7c2a9d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Managed provider keys - health is kept in memory, written back on shutdown
    op.create_table('api_credentials',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('model', sa.String(length=150), nullable=False, server_default='default'),
        sa.Column('secret', sa.Text(), nullable=False),
        sa.Column('status', sa.Enum('alive', 'quota_exceeded', 'dead', name='credentialstatus'),
                  nullable=False, server_default='alive'),
        sa.Column('cooldown_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(length=200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_api_credentials_provider'), 'api_credentials', ['provider'], unique=False)

    # Page settings - written by the dashboard, read by the engine
    op.create_table('page_configs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('page_id', sa.String(length=100), nullable=False),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('bot_name', sa.String(length=100), nullable=True),
        sa.Column('text_prompt', sa.Text(), nullable=True),
        sa.Column('image_prompt', sa.Text(), nullable=True),
        sa.Column('chat_model', sa.String(length=150), nullable=True),
        sa.Column('provider', sa.String(length=50), nullable=True),
        sa.Column('api_key', sa.Text(), nullable=True),
        sa.Column('cheap_engine', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('is_external_api', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('page_access_token', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_page_configs_page_id'), 'page_configs', ['page_id'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_page_configs_page_id'), table_name='page_configs')
    op.drop_table('page_configs')
    op.drop_index(op.f('ix_api_credentials_provider'), table_name='api_credentials')
    op.drop_table('api_credentials')
    sa.Enum(name='credentialstatus').drop(op.get_bind(), checkfirst=True)
