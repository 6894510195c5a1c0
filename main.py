# --- START OF FILE main.py ---

import logging
import asyncio
import signal
import threading # Flask runs in a background thread
import time
import concurrent.futures
from datetime import timedelta

# --- Telegram Imports ---
from telegram import Update, BotCommand, InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo
from telegram.ext import (
    Application, ApplicationBuilder, Defaults, ContextTypes,
    CommandHandler, MessageHandler, PreCheckoutQueryHandler, filters,
    PicklePersistence, PersistenceInput, JobQueue
)
from telegram.constants import ParseMode
from telegram.error import Forbidden, BadRequest, NetworkError, RetryAfter

# --- Flask Imports ---
from flask import Flask, request, Response, jsonify

# --- Local Imports ---
from utils import (
    TOKEN, WEB_APP_URL, WEBHOOK_URL, HTTP_PORT, PERSISTENCE_PATH,
    PROVIDER_TIMEOUT, BOT_VERSION, SERVICE_NAME,
    send_message_with_retry
)
import payment
from payment import SERVICES_KEY
from payment_errors import MissingParameter, UnknownProduct, InvoiceCreationFailed
from transaction_log import send_error_log, log_bot_online

# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger('apscheduler.scheduler').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors.default').setLevel(logging.WARNING)
logging.getLogger('werkzeug').setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

flask_app = Flask(__name__)
telegram_app: Application | None = None
main_loop = None
SERVER_START_TIME = time.time()


# --- Commands ---
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/start: remember the session and offer the mini app."""
    if not update.effective_user or not update.effective_chat: return
    user = update.effective_user
    context.user_data['session'] = {
        'user_id': user.id,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'username': user.username,
        'last_active': int(time.time() * 1000),
    }
    reply_markup = None
    if WEB_APP_URL:
        reply_markup = InlineKeyboardMarkup([[InlineKeyboardButton("🎮 Open Mini App", web_app=WebAppInfo(url=WEB_APP_URL))]])
    await send_message_with_retry(
        context.bot, update.effective_chat.id,
        "👋 <b>Welcome to Void Gift!</b>\n\n"
        "🎮 Play the spin wheel\n"
        "🎁 Win amazing prizes\n"
        "💰 Purchase coins with Telegram Stars\n"
        "📦 Build your collection\n\n"
        "Click the button below to start playing:",
        reply_markup=reply_markup,
        parse_mode=ParseMode.HTML,
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    if not update.effective_chat: return
    services = payment.get_services(context)
    help_text = (
        "🤖 <b>Bot Commands:</b>\n\n"
        "/start - Open the mini app\n"
        "/help - Show this message\n\n"
        "<b>Admin Commands:</b>\n"
        "/refund [charge_id] - Refund a payment\n\n"
        "<b>How Payments Work:</b>\n"
        "1. Tap \"Purchase\" in the Mini App\n"
        "2. The invoice opens as a popup\n"
        "3. Pay with Stars without leaving the app\n"
        "4. Coins are delivered right after payment\n\n"
        f"📦 <b>Coin packages:</b> {len(services.catalog)}"
    )
    await send_message_with_retry(context.bot, update.effective_chat.id, help_text, parse_mode=ParseMode.HTML)


# --- Error Handler ---
async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    chat_id = None
    user_id = None
    if isinstance(update, Update):
        if update.effective_chat: chat_id = update.effective_chat.id
        if update.effective_user: user_id = update.effective_user.id

    if isinstance(context.error, BadRequest):
        error_str_lower = str(context.error).lower()
        if "message is not modified" in error_str_lower or "query is too old" in error_str_lower:
            logger.debug(f"Ignoring benign BadRequest for chat {chat_id}: {context.error}")
            return
    if isinstance(context.error, Forbidden):
        logger.warning(f"Forbidden error for chat {chat_id} (User: {user_id}): Bot possibly blocked or kicked.")
        return
    if isinstance(context.error, RetryAfter):
        logger.warning(f"Rate limit hit during update processing for chat {chat_id}. Error: {context.error}")
        return

    logger.error(msg="Exception while handling an update:", exc_info=context.error)
    await send_error_log(context.bot, context.error, f"Update handler (chat {chat_id}, user {user_id})")

    if chat_id:
        if isinstance(context.error, NetworkError):
            error_message = "A network error occurred. Please check your connection and try again."
        else:
            error_message = "An unexpected error occurred. Please contact support."
        try:
            await send_message_with_retry(context.bot, chat_id, error_message, parse_mode=None)
        except Exception as e:
            logger.error(f"Failed to send error message to user {chat_id}: {e}")


# --- Bot Setup Functions ---
async def post_init(application: Application) -> None:
    logger.info("Running post_init setup...")
    await application.bot.set_my_commands([
        BotCommand("start", "Open the mini app"),
        BotCommand("help", "How payments work"),
    ])
    await log_bot_online(application.bot, len(application.bot_data[SERVICES_KEY].catalog))
    logger.info("Post_init finished.")


async def post_shutdown(application: Application) -> None:
    logger.info("Running post_shutdown cleanup...")
    logger.info("Post_shutdown finished.")


def register_handlers(application: Application) -> None:
    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("refund", payment.handle_refund_command))
    application.add_handler(PreCheckoutQueryHandler(payment.handle_pre_checkout_query))
    application.add_handler(MessageHandler(filters.SUCCESSFUL_PAYMENT, payment.handle_successful_payment))
    application.add_error_handler(error_handler)


# --- Flask Routes ---
def _run_on_bot_loop(coro, timeout: float):
    """Runs a coroutine on the bot's event loop from a Flask worker thread."""
    future = asyncio.run_coroutine_threadsafe(coro, main_loop)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise


@flask_app.after_request
def add_cors_headers(response):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


@flask_app.route("/", methods=['GET'])
def root():
    """Liveness / version info for the mini app."""
    return jsonify({
        'status': 'online',
        'service': SERVICE_NAME,
        'version': BOT_VERSION,
        'uptime': int(time.time() - SERVER_START_TIME),
        'features': ['openInvoice', 'cloudStorage', 'refunds'],
    })


@flask_app.route("/health", methods=['GET'])
def health_check():
    return Response("OK", status=200)


@flask_app.route("/create-invoice", methods=['POST', 'OPTIONS'])
def create_invoice():
    if request.method == 'OPTIONS':
        return Response(status=204)
    if not telegram_app or not main_loop:
        logger.error("Invoice request received but Telegram app or event loop not initialized.")
        return jsonify({'error': 'Service not ready'}), 503

    data = request.get_json(silent=True) or {}
    user_id = data.get('userId') if isinstance(data, dict) else None
    product_id = data.get('productId') if isinstance(data, dict) else None
    logger.info(f"📱 Invoice request received: userId={user_id}, productId={product_id}")

    services = telegram_app.bot_data[SERVICES_KEY]
    try:
        invoice_link, product = _run_on_bot_loop(
            payment.issue_invoice(telegram_app.bot, services, user_id, product_id),
            timeout=PROVIDER_TIMEOUT + 5,
        )
    except MissingParameter as e:
        logger.info(f"❌ Rejected invoice request: {e}")
        missing = user_id in (None, "") or not product_id
        return jsonify({
            'error': 'Missing userId or productId' if missing else str(e),
            'received': {'userId': user_id, 'productId': product_id},
        }), 400
    except UnknownProduct:
        return jsonify({
            'error': 'Invalid product',
            'productId': product_id,
            'availableProducts': services.catalog.ids(),
        }), 400
    except InvoiceCreationFailed as e:
        return jsonify({'error': 'Failed to create invoice', 'message': str(e)}), 500
    except Exception as e:
        logger.error(f"❌ Error creating invoice link: {e}", exc_info=True)
        return jsonify({'error': 'Failed to create invoice', 'message': str(e) or type(e).__name__}), 500

    return jsonify({
        'success': True,
        'invoiceLink': invoice_link,
        'product': {
            'id': product.id,
            'title': product.title,
            'stars': product.price,
            'coins': product.quantity,
        },
    })


@flask_app.route(f"/telegram/{TOKEN}", methods=['POST'])
def telegram_webhook():
    if not telegram_app or not main_loop:
        logger.error("Telegram webhook received but app/loop not ready.")
        return Response(status=503)
    update_data = request.get_json(silent=True)
    if update_data is None:
        logger.error("Telegram webhook received invalid JSON.")
        return Response("Invalid JSON", status=400)
    try:
        update = Update.de_json(update_data, telegram_app.bot)
        asyncio.run_coroutine_threadsafe(telegram_app.process_update(update), main_loop)
        return Response(status=200)
    except Exception as e:
        logger.error(f"Error processing Telegram webhook: {e}", exc_info=True)
        return Response("Internal Server Error", status=500)


def main() -> None:
    global telegram_app, main_loop
    logger.info("Starting bot...")
    if not TOKEN:
        logger.critical("BOT_TOKEN is not set. Exiting.")
        raise SystemExit(1)

    services = payment.build_services()
    defaults = Defaults(parse_mode=None, block=False)

    # Persist user sessions only; bot_data holds live services
    persistence = PicklePersistence(
        filepath=PERSISTENCE_PATH,
        store_data=PersistenceInput(bot_data=False, chat_data=False, callback_data=False),
    )

    app_builder = ApplicationBuilder().token(TOKEN).defaults(defaults).job_queue(JobQueue()).persistence(persistence)
    application = app_builder.build()
    application.bot_data[SERVICES_KEY] = services
    register_handlers(application)
    telegram_app = application

    main_loop = asyncio.new_event_loop()
    asyncio.set_event_loop(main_loop)

    job_queue = application.job_queue
    if job_queue:
        job_queue.run_repeating(payment.sweep_pending_checkouts_job, interval=timedelta(minutes=10), first=timedelta(minutes=1), name="sweep_pending_checkouts")
        logger.info("Background jobs setup complete (pending checkout sweep).")
    else: logger.warning("Job Queue is not available. Background jobs skipped.")

    async def setup_and_run():
        logger.info("Initializing application...")
        await application.initialize()
        await post_init(application)
        if WEBHOOK_URL:
            logger.info(f"Setting Telegram webhook to: {WEBHOOK_URL}/telegram/<token>")
            if not await application.bot.set_webhook(url=f"{WEBHOOK_URL}/telegram/{TOKEN}", allowed_updates=Update.ALL_TYPES):
                logger.error("Failed to set Telegram webhook.")
                return
            await application.start()
            logger.info("Telegram application started (webhook mode).")
        else:
            await application.bot.delete_webhook()
            await application.start()
            await application.updater.start_polling(allowed_updates=Update.ALL_TYPES)
            logger.info("Telegram application started (polling mode).")

        flask_thread = threading.Thread(target=lambda: flask_app.run(host='0.0.0.0', port=HTTP_PORT, debug=False), daemon=True)
        flask_thread.start()
        logger.info(f"🌐 HTTP server running on port {HTTP_PORT} (POST /create-invoice)")
        signals = (signal.SIGHUP, signal.SIGTERM, signal.SIGINT)
        for s in signals: main_loop.add_signal_handler(s, lambda s=s: asyncio.create_task(shutdown(s, application)))
        try:
            while True: await asyncio.sleep(3600)
        except asyncio.CancelledError: logger.info("Keep-alive loop cancelled.")
        finally: logger.info("Exiting keep-alive loop.")

    async def shutdown(sig, application):
        logger.info(f"Received exit signal {sig.name}...")
        logger.info("Shutting down application...")
        if application:
            if application.updater and application.updater.running:
                await application.updater.stop()
            await application.stop()
            await application.shutdown()
            await post_shutdown(application)
        tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
        for task in tasks: task.cancel()
        logger.info(f"Cancelling {len(tasks)} outstanding tasks")
        await asyncio.gather(*tasks, return_exceptions=True)

    try:
        main_loop.run_until_complete(setup_and_run())
    except (KeyboardInterrupt, SystemExit) as e:
        logger.info(f"Shutdown initiated by {type(e).__name__}.")
    except Exception as e:
        logger.critical(f"Critical error in main execution loop: {e}", exc_info=True)
    finally:
        logger.info("Main loop finished or interrupted.")
        if main_loop.is_running():
            main_loop.stop()
        logger.info("Bot shutdown complete.")


if __name__ == '__main__':
    main()

# --- END OF FILE main.py ---
