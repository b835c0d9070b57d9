"""create messages, conversations and sync_states tables

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '1a2b3c4d5e6f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'messages',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('from_name', sa.String(length=255), nullable=True),
        sa.Column('from_id', sa.String(length=255), nullable=True),
        sa.Column('to_address', sa.Text(), nullable=True),
        sa.Column('body', sa.Text(), nullable=False, server_default=''),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.BigInteger(), nullable=False),
        sa.Column('is_from_me', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('chat_name', sa.String(length=255), nullable=True),
        sa.Column('thread_id', sa.String(length=255), nullable=True),
        sa.Column('type', sa.String(length=20), nullable=False, server_default='message'),
        sa.Column('has_media', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('id', 'platform'),
    )
    op.create_index('ix_messages_platform', 'messages', ['platform'])
    op.create_index('ix_messages_timestamp', 'messages', ['timestamp'])
    op.create_index('ix_messages_from_id', 'messages', ['from_id'])
    op.create_index('ix_messages_thread_id', 'messages', ['thread_id'])

    op.create_table(
        'conversations',
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('last_message_id', sa.String(length=255), nullable=True),
        sa.Column('last_message_time', sa.BigInteger(), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('platform', 'id'),
    )
    op.create_index('ix_conversations_last_message_time', 'conversations', ['last_message_time'])

    op.create_table(
        'sync_states',
        sa.Column('platform', sa.String(length=50), nullable=False),
        sa.Column('sync_cursor', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('platform'),
    )


def downgrade() -> None:
    op.drop_table('sync_states')

    op.drop_index('ix_conversations_last_message_time', table_name='conversations')
    op.drop_table('conversations')

    op.drop_index('ix_messages_thread_id', table_name='messages')
    op.drop_index('ix_messages_from_id', table_name='messages')
    op.drop_index('ix_messages_timestamp', table_name='messages')
    op.drop_index('ix_messages_platform', table_name='messages')
    op.drop_table('messages')
