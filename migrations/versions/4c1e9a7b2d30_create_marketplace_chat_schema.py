"""create marketplace chat schema

Revision ID: 4c1e9a7b2d30
Revises:
Create Date: 2026-10-18 09:12:41.208113

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c1e9a7b2d30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UPDATED_AT_TABLES = (
    "conversations",
    "messages",
    "message_notification_settings",
    "push_subscriptions",
)


def upgrade() -> None:
    """Upgrade schema."""
    # Step 1: Create the function (required before triggers)
    op.execute(
        """
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ language 'plpgsql'
    """
    )

    # Step 2: Create tables
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id SERIAL PRIMARY KEY,
            article_id INTEGER NOT NULL,
            buyer_id INTEGER NOT NULL,
            seller_id INTEGER NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'archived', 'blocked')),
            last_message_id INTEGER,
            last_message_at TIMESTAMP WITH TIME ZONE,
            buyer_unread_count INTEGER NOT NULL DEFAULT 0
                CHECK (buyer_unread_count >= 0),
            seller_unread_count INTEGER NOT NULL DEFAULT 0
                CHECK (seller_unread_count >= 0),
            is_buyer_typing BOOLEAN NOT NULL DEFAULT FALSE,
            is_seller_typing BOOLEAN NOT NULL DEFAULT FALSE,
            buyer_last_seen TIMESTAMP WITH TIME ZONE,
            seller_last_seen TIMESTAMP WITH TIME ZONE,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            CONSTRAINT unique_conversation UNIQUE (article_id, buyer_id, seller_id),
            CHECK (buyer_id <> seller_id)
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS messages (
            id SERIAL PRIMARY KEY,
            conversation_id INTEGER NOT NULL
                REFERENCES conversations(id) ON DELETE CASCADE,
            sender_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            message_type VARCHAR(20) NOT NULL DEFAULT 'text'
                CHECK (message_type IN ('text', 'image', 'file', 'system', 'offer')),
            system_message_type VARCHAR(50),
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            read_at TIMESTAMP WITH TIME ZONE,
            is_edited BOOLEAN NOT NULL DEFAULT FALSE,
            edited_at TIMESTAMP WITH TIME ZONE,
            reply_to_message_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
            metadata JSON,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS message_attachments (
            id SERIAL PRIMARY KEY,
            message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            filename VARCHAR(255) NOT NULL,
            original_filename VARCHAR(255) NOT NULL,
            file_path VARCHAR(500) NOT NULL,
            file_size INTEGER NOT NULL,
            mime_type VARCHAR(100) NOT NULL,
            width INTEGER,
            height INTEGER,
            thumbnail_path VARCHAR(500),
            is_image BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS message_reactions (
            id SERIAL PRIMARY KEY,
            message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            user_id INTEGER NOT NULL,
            emoji VARCHAR(32) NOT NULL,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            CONSTRAINT unique_reaction UNIQUE (message_id, user_id, emoji)
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS message_delivery_status (
            id SERIAL PRIMARY KEY,
            message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            user_id INTEGER NOT NULL,
            status VARCHAR(20) NOT NULL
                CHECK (status IN ('sent', 'delivered', 'read')),
            status_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            CONSTRAINT unique_delivery UNIQUE (message_id, user_id)
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS message_blocks (
            id SERIAL PRIMARY KEY,
            blocker_id INTEGER NOT NULL,
            blocked_id INTEGER NOT NULL,
            conversation_id INTEGER REFERENCES conversations(id) ON DELETE SET NULL,
            reason VARCHAR(255),
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            CONSTRAINT unique_block UNIQUE (blocker_id, blocked_id)
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS message_notification_settings (
            id SERIAL PRIMARY KEY,
            user_id INTEGER NOT NULL UNIQUE,
            email_notifications BOOLEAN NOT NULL DEFAULT TRUE,
            push_notifications BOOLEAN NOT NULL DEFAULT TRUE,
            in_app_notifications BOOLEAN NOT NULL DEFAULT TRUE,
            sound_notifications BOOLEAN NOT NULL DEFAULT TRUE,
            notification_frequency VARCHAR(10) NOT NULL DEFAULT 'instant'
                CHECK (notification_frequency IN
                    ('instant', 'hourly', 'daily', 'never')),
            quiet_hours_start TIME,
            quiet_hours_end TIME,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS push_subscriptions (
            id SERIAL PRIMARY KEY,
            user_id INTEGER NOT NULL,
            endpoint VARCHAR(500) NOT NULL,
            p256dh_key VARCHAR(255) NOT NULL,
            auth_key VARCHAR(255) NOT NULL,
            user_agent TEXT,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            CONSTRAINT unique_subscription UNIQUE (user_id, endpoint)
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id SERIAL PRIMARY KEY,
            user_id INTEGER NOT NULL,
            type VARCHAR(50) NOT NULL,
            title VARCHAR(255) NOT NULL,
            message TEXT NOT NULL,
            data JSON,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            read_at TIMESTAMP WITH TIME ZONE,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
        )
    """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS websocket_connections (
            id SERIAL PRIMARY KEY,
            user_id INTEGER NOT NULL,
            connection_id VARCHAR(255) NOT NULL UNIQUE,
            transport VARCHAR(20) NOT NULL DEFAULT 'websocket'
                CHECK (transport IN ('websocket', 'sse')),
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            last_ping TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            user_agent TEXT,
            ip_address VARCHAR(45),
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
        )
    """
    )

    # Step 3: Create indexes
    indexes = [
        "idx_conversations_article ON conversations(article_id)",
        "idx_conversations_buyer ON conversations(buyer_id)",
        "idx_conversations_seller ON conversations(seller_id)",
        "idx_conversations_status ON conversations(status)",
        "idx_conversations_last_message ON conversations(last_message_at DESC)",
        "idx_messages_conversation_id ON messages(conversation_id)",
        "idx_messages_sender ON messages(sender_id)",
        "idx_messages_conversation_created ON messages(conversation_id, created_at)",
        "idx_unread_messages ON messages(conversation_id, is_read, created_at)",
        "idx_attachments_message ON message_attachments(message_id)",
        "idx_attachments_is_image ON message_attachments(is_image)",
        "idx_reactions_message ON message_reactions(message_id)",
        "idx_delivery_message ON message_delivery_status(message_id)",
        "idx_delivery_status ON message_delivery_status(status)",
        "idx_blocks_blocker ON message_blocks(blocker_id)",
        "idx_blocks_blocked ON message_blocks(blocked_id)",
        "idx_push_user ON push_subscriptions(user_id)",
        "idx_push_active ON push_subscriptions(is_active)",
        "idx_notifications_user ON notifications(user_id)",
        "idx_connections_user ON websocket_connections(user_id)",
        "idx_connections_active ON websocket_connections(is_active)",
    ]
    for index in indexes:
        op.execute(f"CREATE INDEX IF NOT EXISTS {index}")

    # Step 4: Create triggers (only after tables exist)
    for table in UPDATED_AT_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
        """
        )


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        "websocket_connections",
        "notifications",
        "push_subscriptions",
        "message_notification_settings",
        "message_blocks",
        "message_delivery_status",
        "message_reactions",
        "message_attachments",
        "messages",
        "conversations",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")
