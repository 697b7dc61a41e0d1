"""SQLite database schema."""

SCHEMA = """
-- Telegram users (chat ids) that have interacted with the bot
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY,
    username TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Per-user wallet tracking state and notification watermark
CREATE TABLE IF NOT EXISTS tracked_wallets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    wallet_address TEXT NOT NULL,
    label TEXT,
    last_notified_tx_signature TEXT,
    last_processed_block_time INTEGER,  -- Unix seconds
    tracking_started_at INTEGER,        -- Unix seconds
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(user_id),
    UNIQUE(user_id, wallet_address)
);

-- Last seen price per token, the reference for change computation
CREATE TABLE IF NOT EXISTS token_prices (
    mint_address TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    name TEXT NOT NULL,
    current_price REAL,
    last_update_time INTEGER  -- Unix seconds
);

-- User price-target alerts
CREATE TABLE IF NOT EXISTS user_price_alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    mint_address TEXT NOT NULL,
    target_price REAL NOT NULL,
    is_above_target INTEGER NOT NULL,
    is_triggered INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(user_id)
);

-- Users who opted out of KOL ranking broadcasts
CREATE TABLE IF NOT EXISTS kol_update_unsubscriptions (
    user_id INTEGER PRIMARY KEY,
    unsubscribed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY(user_id) REFERENCES users(user_id)
);

-- Last stored Top-N KOL ranking
CREATE TABLE IF NOT EXISTS previous_top_kols (
    rank INTEGER PRIMARY KEY,
    owner_address TEXT NOT NULL UNIQUE,
    name TEXT,
    last_checked_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_tracked_wallets_address ON tracked_wallets(wallet_address);
CREATE INDEX IF NOT EXISTS idx_alerts_mint_active ON user_price_alerts(mint_address, is_triggered);
CREATE INDEX IF NOT EXISTS idx_alerts_user_active ON user_price_alerts(user_id, is_triggered);
"""
