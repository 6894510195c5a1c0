# --- START OF FILE utils.py ---

import logging
import asyncio
import os
import sqlite3
import hashlib

# --- Telegram Imports ---
from telegram.error import Forbidden, BadRequest, NetworkError, RetryAfter, TelegramError

logger = logging.getLogger(__name__)

# --- Configuration (environment) ---
TOKEN = os.environ.get("BOT_TOKEN", "")
WEB_APP_URL = os.environ.get("WEB_APP_URL", "")
WEBHOOK_URL = os.environ.get("WEBHOOK_URL", "")  # empty -> long polling
HTTP_PORT = int(os.environ.get("PORT", 3000))

# Telegram group logging (forum topics)
LOG_CHAT_ID = os.environ.get("LOG_CHAT_ID", "")
SYSTEM_LOG_TOPIC_ID = int(os.environ.get("SYSTEM_LOG_TOPIC_ID", 6))       # startup, errors
TRANSACTION_LOG_TOPIC_ID = int(os.environ.get("TRANSACTION_LOG_TOPIC_ID", 3))  # invoices, payments, refunds

# Admins allowed to run /refund
ADMIN_ID = int(os.environ.get("ADMIN_ID", 0) or 0)
SECONDARY_ADMIN_IDS = [
    int(uid.strip()) for uid in os.environ.get("SECONDARY_ADMIN_IDS", "").split(",") if uid.strip().isdigit()
]

DATABASE_PATH = os.environ.get("DATABASE_PATH", "payments.db")
PERSISTENCE_PATH = os.environ.get("PERSISTENCE_PATH", "bot_persistence.pickle")

# HMAC key for invoice payloads; derived from the bot token unless set explicitly
PAYLOAD_SECRET = os.environ.get("PAYLOAD_SECRET") or hashlib.sha256(f"payload:{TOKEN}".encode("utf-8")).hexdigest()

PROVIDER_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT", 10))
PENDING_CHECKOUT_TTL = int(os.environ.get("PENDING_CHECKOUT_TTL", 3600))
PENDING_CHECKOUT_MAX = int(os.environ.get("PENDING_CHECKOUT_MAX", 10000))

BOT_VERSION = "7.0"
SERVICE_NAME = "Void Gift Bot - Invoice API"


def get_admin_ids() -> set[int]:
    """All admin ids, primary first. Zero (unset) is never an admin."""
    admin_ids = {uid for uid in [ADMIN_ID, *SECONDARY_ADMIN_IDS] if uid}
    return admin_ids


def get_first_primary_admin_id() -> int | None:
    return ADMIN_ID or None


# --- Database ---
def get_db_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Opens a sqlite connection with Row access. Transactions are opened with explicit BEGIN."""
    conn = sqlite3.connect(db_path or DATABASE_PATH, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db(db_path: str | None = None) -> None:
    """Creates the payment tables if they do not exist yet."""
    conn = None
    try:
        conn = get_db_connection(db_path)
        c = conn.cursor()
        c.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                charge_id TEXT NOT NULL UNIQUE,
                provider_charge_id TEXT,
                product_id TEXT NOT NULL,
                spent_stars INTEGER NOT NULL,
                coins_delivered INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                recorded_at TEXT NOT NULL,
                refunded INTEGER NOT NULL DEFAULT 0,
                refunded_at TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS failed_deliveries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER,
                charge_id TEXT NOT NULL,
                error TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_payments_user ON payments(user_id)")
        logger.info(f"Database initialized at {db_path or DATABASE_PATH}")
    except sqlite3.Error as e:
        logger.critical(f"Failed to initialize database: {e}", exc_info=True)
        raise
    finally:
        if conn: conn.close()


# --- Provider calls ---
async def call_provider(coro, timeout: float | None = None):
    """Awaits a Bot API call with a bounded wait. Raises asyncio.TimeoutError when it stalls."""
    return await asyncio.wait_for(coro, timeout=timeout or PROVIDER_TIMEOUT)


async def send_message_with_retry(bot, chat_id, text, reply_markup=None, max_retries=3, parse_mode=None, disable_web_page_preview=False, message_thread_id=None, timeout=None, retry_on_network_error=True):
    """
    Sends a message, retrying on flood control and network errors. Returns the Message or None.

    With retry_on_network_error=False a timeout or network error ends the send: the
    message may already have been delivered, so it is never sent a second time.
    Flood control (RetryAfter) is still retried since Telegram rejected that request.
    """
    for attempt in range(max_retries):
        try:
            return await call_provider(bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
                disable_web_page_preview=disable_web_page_preview,
                message_thread_id=message_thread_id,
            ), timeout)
        except RetryAfter as e:
            retry_after = e.retry_after
            if hasattr(retry_after, "total_seconds"): retry_after = retry_after.total_seconds()
            retry_seconds = float(retry_after) + 1
            logger.warning(f"Rate limit sending to {chat_id}. Retrying in {retry_seconds}s (attempt {attempt + 1}/{max_retries})")
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_seconds)
        except (Forbidden, BadRequest) as e:
            logger.warning(f"Cannot send message to {chat_id}: {e}")
            return None
        except (NetworkError, asyncio.TimeoutError) as e:
            logger.warning(f"Network error sending to {chat_id}: {e} (attempt {attempt + 1}/{max_retries})")
            if not retry_on_network_error:
                logger.error(f"Not retrying send to {chat_id}: outcome of the failed attempt is unknown.")
                return None
            if attempt < max_retries - 1:
                await asyncio.sleep(1 * (2 ** attempt))
        except TelegramError as e:
            logger.error(f"Telegram error sending to {chat_id}: {e}")
            return None
    logger.error(f"Failed to send message to {chat_id} after {max_retries} attempts.")
    return None

# --- END OF FILE utils.py ---
