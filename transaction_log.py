# --- START OF FILE transaction_log.py ---

import logging
import html
import traceback
from datetime import datetime, timezone

from telegram.constants import ParseMode

from utils import (
    LOG_CHAT_ID, SYSTEM_LOG_TOPIC_ID, TRANSACTION_LOG_TOPIC_ID,
    send_message_with_retry
)

logger = logging.getLogger(__name__)

SEPARATOR = "━━━━━━━━━━━━━━━━━━━━"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user_label(user_id, username) -> str:
    return f"@{html.escape(username)}" if username else f"User ID: {user_id}"


# --- Sinks ---
async def _send_to_topic(bot, topic_id: int, message: str) -> bool:
    if not LOG_CHAT_ID:
        logger.debug("LOG_CHAT_ID not set; skipping Telegram log entry.")
        return False
    try:
        sent = await send_message_with_retry(
            bot, LOG_CHAT_ID, message.strip(),
            parse_mode=ParseMode.HTML,
            disable_web_page_preview=True,
            message_thread_id=topic_id,
        )
        return sent is not None
    except Exception as e:
        # the log channel must never break a payment flow
        logger.error(f"Error sending log entry to topic {topic_id}: {e}", exc_info=True)
        return False


async def send_system_log(bot, message: str) -> bool:
    return await _send_to_topic(bot, SYSTEM_LOG_TOPIC_ID, message)


async def send_transaction_log(bot, message: str) -> bool:
    return await _send_to_topic(bot, TRANSACTION_LOG_TOPIC_ID, message)


async def send_error_log(bot, error: BaseException, context: str = "") -> bool:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))[:500] or "No stack trace"
    message = f"""
❌ <b>ERROR OCCURRED</b>
{SEPARATOR}

<b>Context:</b> {html.escape(context)}
<b>Error:</b> {html.escape(str(error))}

<b>Stack:</b>
<code>{html.escape(stack)}</code>

🕐 <b>Time:</b> {_now_iso()}
"""
    return await send_system_log(bot, message)


async def log_bot_online(bot, product_count: int) -> bool:
    message = f"""
⚡️ <b>BOT IS ONLINE</b>
{SEPARATOR}

💰 <b>Payment System:</b> Telegram Stars (openInvoice)
📦 <b>Available Packages:</b> {product_count}
🕐 <b>Timestamp:</b> {_now_iso()}
"""
    return await send_system_log(bot, message)


# --- Transaction entries ---
async def log_invoice_created(bot, user_id, product) -> bool:
    message = f"""
📝 <b>INVOICE CREATED</b>

👤 <b>User ID:</b> <code>{user_id}</code>
📦 <b>Product:</b> {html.escape(product.title)}
💎 <b>Product ID:</b> <code>{product.id}</code>
⭐ <b>Stars:</b> {product.price}
🪙 <b>Coins:</b> {product.quantity}
🔗 <b>Method:</b> openInvoice API
📅 <b>Time:</b> {_now_iso()}
"""
    return await send_transaction_log(bot, message)


async def log_transaction(bot, user_id, username, product, status: str = "success", charge_id: str | None = None, provider_charge_id: str | None = None) -> bool:
    """Pre-checkout and success entries. Other statuses are ignored."""
    user = _user_label(user_id, username)
    if status == "success":
        message = f"""
✅ <b>PAYMENT SUCCESSFUL</b>
{SEPARATOR}

👤 <b>User:</b> {user}
🆔 <b>User ID:</b> <code>{user_id}</code>
📦 <b>Product:</b> {html.escape(product.title)}
💎 <b>Product ID:</b> <code>{product.id}</code>
⭐ <b>Stars Paid:</b> {product.price}
🪙 <b>Coins Delivered:</b> {product.quantity}
💳 <b>Charge ID:</b> <code>{html.escape(charge_id or '')}</code>
🔗 <b>Provider Charge ID:</b> <code>{html.escape(provider_charge_id or '')}</code>
📅 <b>Date:</b> {_now_iso()}

<b>Method:</b> openInvoice (Direct Popup)
"""
    elif status == "pre_checkout":
        message = f"""
⏳ <b>PAYMENT INITIATED</b>
{SEPARATOR}

👤 <b>User:</b> {user}
🆔 <b>User ID:</b> <code>{user_id}</code>
📦 <b>Product:</b> {html.escape(product.title)}
💎 <b>Product ID:</b> <code>{product.id}</code>
⭐ <b>Stars:</b> {product.price}
🪙 <b>Coins:</b> {product.quantity}
📅 <b>Date:</b> {_now_iso()}

<b>Status:</b> Pre-checkout approved, awaiting payment
"""
    else:
        logger.warning(f"Unknown transaction log status: {status}")
        return False
    sent = await send_transaction_log(bot, message)
    logger.info(f"📊 Transaction logged to channel ({status})")
    return sent


# --- Alerts ---
async def log_fraud_alert(bot, user_id, username, product_id, expected: int, received) -> bool:
    logger.warning(f"⚠️ FRAUD ALERT: Price mismatch for user {user_id}, product {product_id}. Expected: {expected}, Got: {received}")
    message = (
        f"⚠️ <b>FRAUD ALERT:</b> Price mismatch\n"
        f"User: {user_id} (@{html.escape(username or 'no_username')})\n"
        f"Product: {html.escape(str(product_id))}\n"
        f"Expected: {expected} stars\n"
        f"Received: {received} stars"
    )
    return await send_transaction_log(bot, message)


async def log_delivery_failed(bot, user_id, charge_id: str, error, recorded: bool = True) -> bool:
    """recorded=False means no PaymentRecord exists, so /refund cannot find the charge."""
    logger.critical(f"🚨 FAILED DELIVERY: User {user_id}, Charge {charge_id}, Error: {error}")
    if recorded:
        action = f"Use: <code>/refund {html.escape(charge_id)}</code>"
    else:
        action = (
            "No payment record was written for this charge, so /refund will not find it.\n"
            f"Refund it directly with refundStarPayment (user <code>{user_id}</code>, charge <code>{html.escape(charge_id)}</code>)."
        )
    message = f"""
🚨 <b>DELIVERY FAILED</b>

👤 <b>User ID:</b> <code>{user_id}</code>
💳 <b>Charge ID:</b> <code>{html.escape(charge_id)}</code>
❌ <b>Error:</b> {html.escape(str(error))}
📅 <b>Time:</b> {_now_iso()}

⚠️ <b>ACTION REQUIRED:</b> Manual refund may be needed!
{action}
"""
    return await send_transaction_log(bot, message)


async def log_refund_processed(bot, record, processed_by) -> bool:
    message = f"""
💸 <b>REFUND PROCESSED</b>

👤 <b>User ID:</b> <code>{record.payer_id}</code>
💳 <b>Charge ID:</b> <code>{html.escape(record.charge_id)}</code>
⭐ <b>Stars Refunded:</b> {record.amount_paid}
🪙 <b>Coins Delivered (lost):</b> {record.quantity_delivered}
📅 <b>Refund Date:</b> {record.refunded_at or _now_iso()}
👨‍💼 <b>Processed by:</b> {html.escape(str(processed_by))}
"""
    return await send_transaction_log(bot, message)

# --- END OF FILE transaction_log.py ---
