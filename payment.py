# --- START OF FILE payment.py ---

import logging
import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# --- Telegram Imports ---
from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup, LabeledPrice, WebAppInfo
from telegram.constants import ParseMode
from telegram.ext import ContextTypes
# -------------------------

from utils import (
    send_message_with_retry, call_provider, get_admin_ids,
    WEB_APP_URL, PAYLOAD_SECRET, PROVIDER_TIMEOUT, DATABASE_PATH,
    PENDING_CHECKOUT_TTL, PENDING_CHECKOUT_MAX
)
from catalog import Product, ProductCatalog, load_catalog
from payment_store import PaymentStore
from pending_checkouts import PendingCheckoutTracker
from payment_errors import (
    MissingParameter, UnknownProduct, InvalidPayload, InvalidProductReference,
    AmountMismatch, InvoiceCreationFailed, RefundFailed, DeliveryFailure,
    DuplicatePayment, AlreadyRefunded, Unauthorized, PaymentNotFound
)
from transaction_log import (
    send_error_log, log_invoice_created, log_transaction, log_fraud_alert,
    log_delivery_failed, log_refund_processed
)

logger = logging.getLogger(__name__)

STARS_CURRENCY = "XTR"
SERVICES_KEY = "payment_services"
GENERIC_RETRY_MESSAGE = "An error occurred. Please try again later."


def _now_ms() -> int:
    return int(time.time() * 1000)


# --- Services container (stored in application.bot_data) ---
@dataclass
class PaymentServices:
    catalog: ProductCatalog
    store: PaymentStore
    pending: PendingCheckoutTracker
    admin_ids: frozenset
    payload_secret: str
    web_app_url: str = ""
    provider_timeout: float = PROVIDER_TIMEOUT
    refund_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def build_services(db_path: str | None = None) -> PaymentServices:
    return PaymentServices(
        catalog=load_catalog(),
        store=PaymentStore(db_path or DATABASE_PATH),
        pending=PendingCheckoutTracker(ttl_seconds=PENDING_CHECKOUT_TTL, max_entries=PENDING_CHECKOUT_MAX),
        admin_ids=frozenset(get_admin_ids()),
        payload_secret=PAYLOAD_SECRET,
        web_app_url=WEB_APP_URL,
    )


def get_services(context: ContextTypes.DEFAULT_TYPE) -> PaymentServices:
    return context.bot_data[SERVICES_KEY]


# --- Invoice payload ---
@dataclass(frozen=True)
class InvoicePayload:
    """
    Data attached to the invoice and echoed back by Telegram.

    Serialized as compact JSON with a truncated HMAC-SHA256 tag so it fits
    Telegram's 128-byte payload limit. price/quantity are informational: later
    stages always re-resolve product_id in the catalog.
    """
    product_id: str
    payer_id: int
    issued_at_ms: int
    price: int
    quantity: int

    SIGNATURE_LENGTH = 16

    def _body(self) -> dict:
        return {"p": self.product_id, "u": self.payer_id, "t": self.issued_at_ms, "a": self.price, "q": self.quantity}

    @staticmethod
    def _sign(body: dict, secret: str) -> str:
        raw = json.dumps(body, separators=(",", ":"), sort_keys=True)
        return hmac.new(secret.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()[:InvoicePayload.SIGNATURE_LENGTH]

    def encode(self, secret: str) -> str:
        body = self._body()
        body["s"] = self._sign(body, secret)
        return json.dumps(body, separators=(",", ":"), sort_keys=True)

    @classmethod
    def decode(cls, raw, secret: str) -> "InvoicePayload":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidPayload("Payload is not an object")
        signature = data.pop("s", None)
        if not isinstance(signature, str) or not hmac.compare_digest(signature, cls._sign(data, secret)):
            raise InvalidPayload("Payload signature mismatch")
        product_id, payer_id, issued_at_ms = data.get("p"), data.get("u"), data.get("t")
        price, quantity = data.get("a"), data.get("q")
        if not isinstance(product_id, str) or not product_id:
            raise InvalidPayload("Payload has no product id")
        for name, value in (("payer id", payer_id), ("timestamp", issued_at_ms), ("price", price), ("quantity", quantity)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidPayload(f"Payload has no valid {name}")
        return cls(product_id=product_id, payer_id=payer_id, issued_at_ms=issued_at_ms, price=price, quantity=quantity)


# --- Inbound events ---
@dataclass(frozen=True)
class PreCheckoutEvent:
    query_id: str
    payer_id: int
    payer_username: Optional[str]
    invoice_payload: str
    total_amount: int

    @classmethod
    def from_query(cls, query) -> "PreCheckoutEvent":
        return cls(
            query_id=query.id,
            payer_id=query.from_user.id,
            payer_username=query.from_user.username,
            invoice_payload=query.invoice_payload,
            total_amount=query.total_amount,
        )


@dataclass(frozen=True)
class PaymentEvent:
    charge_id: str
    provider_charge_id: Optional[str]
    total_amount: int
    invoice_payload: str
    payer_id: int
    payer_username: Optional[str]
    chat_id: int

    @classmethod
    def from_message(cls, message) -> "PaymentEvent":
        payment = message.successful_payment
        return cls(
            charge_id=payment.telegram_payment_charge_id,
            provider_charge_id=payment.provider_payment_charge_id,
            total_amount=payment.total_amount,
            invoice_payload=payment.invoice_payload,
            payer_id=message.from_user.id,
            payer_username=message.from_user.username,
            chat_id=message.chat_id,
        )


# --- Outcomes ---
class CheckoutOutcome(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CheckoutDecision:
    outcome: CheckoutOutcome
    reason: Optional[str] = None          # internal reason ("price mismatch", ...)
    error_message: Optional[str] = None   # shown to the payer by Telegram

    @property
    def approved(self) -> bool:
        return self.outcome is CheckoutOutcome.APPROVED

    @classmethod
    def approve(cls) -> "CheckoutDecision":
        return cls(CheckoutOutcome.APPROVED)

    @classmethod
    def reject(cls, reason: str, error_message: str) -> "CheckoutDecision":
        return cls(CheckoutOutcome.REJECTED, reason, error_message)


class FulfillmentOutcome(Enum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class RefundResult:
    charge_id: str
    payer_id: int
    stars_refunded: int
    refunded_at: str
    payer_notified: bool


# --- Invoice Issuer ---
async def issue_invoice(bot, services: PaymentServices, payer_id, product_id) -> tuple[str, Product]:
    """
    Creates a Stars invoice link for a catalog product.

    The charged amount always comes from the catalog, never from the caller.
    Raises MissingParameter, UnknownProduct or InvoiceCreationFailed.
    """
    if payer_id is None or payer_id == "":
        raise MissingParameter("userId")
    if not product_id:
        raise MissingParameter("productId")
    try:
        payer_id = int(payer_id)
    except (TypeError, ValueError):
        raise MissingParameter("userId")

    product = services.catalog.get(product_id)
    if not product:
        logger.info(f"❌ Invalid product requested: {product_id}")
        raise UnknownProduct(product_id)

    payload = InvoicePayload(
        product_id=product.id,
        payer_id=payer_id,
        issued_at_ms=_now_ms(),
        price=product.price,
        quantity=product.quantity,
    ).encode(services.payload_secret)

    logger.info(f"✅ Creating invoice for {product.title} ({product.price} stars), user {payer_id}")
    try:
        invoice_link = await call_provider(bot.create_invoice_link(
            title=product.title,
            description=product.description,
            payload=payload,
            currency=STARS_CURRENCY,
            prices=[LabeledPrice(label=f"{product.quantity} Void Coins", amount=product.price)],
            need_name=False,
            need_phone_number=False,
            need_email=False,
            need_shipping_address=False,
            is_flexible=False,
        ), services.provider_timeout)
    except Exception as e:
        logger.error(f"❌ Error creating invoice link for user {payer_id}, product {product.id}: {e}", exc_info=True)
        await send_error_log(bot, e, "Create Invoice Link Endpoint")
        raise InvoiceCreationFailed(str(e) or type(e).__name__) from e

    logger.info(f"🔗 Invoice link created for user {payer_id}: {invoice_link}")
    await log_invoice_created(bot, payer_id, product)
    return invoice_link, product


# --- Pre-Checkout Validator ---
def _decide_pre_checkout(services: PaymentServices, event: PreCheckoutEvent) -> tuple[CheckoutDecision, Optional[Product]]:
    try:
        payload = InvoicePayload.decode(event.invoice_payload, services.payload_secret)
    except InvalidPayload as e:
        logger.warning(f"❌ Invalid payload in pre-checkout {event.query_id} from user {event.payer_id}: {e}")
        return CheckoutDecision.reject("invalid payload", "Invalid payment data. Please contact support."), None

    product = services.catalog.get(payload.product_id)
    if not product:
        logger.warning(f"❌ Invalid product ID in pre-checkout: {payload.product_id}")
        return CheckoutDecision.reject("unknown product", "Invalid product. Please contact support."), None

    if event.total_amount != product.price:
        return CheckoutDecision.reject("price mismatch", "Price mismatch. Please contact support."), product

    if payload.payer_id != event.payer_id:
        logger.warning(f"Invoice for user {payload.payer_id} is being paid by user {event.payer_id}")
    return CheckoutDecision.approve(), product


async def _answer_pre_checkout(bot, services: PaymentServices, event: PreCheckoutEvent, decision: CheckoutDecision) -> None:
    try:
        if decision.approved:
            await call_provider(bot.answer_pre_checkout_query(pre_checkout_query_id=event.query_id, ok=True), services.provider_timeout)
        else:
            await call_provider(bot.answer_pre_checkout_query(
                pre_checkout_query_id=event.query_id, ok=False, error_message=decision.error_message
            ), services.provider_timeout)
    except Exception as e:
        # one answer only; Telegram times the query out on its own
        logger.error(f"Failed to answer pre-checkout query {event.query_id}: {e}", exc_info=True)
        await send_error_log(bot, e, f"Answer Pre-checkout {event.query_id}")


async def validate_pre_checkout(bot, services: PaymentServices, event: PreCheckoutEvent) -> CheckoutDecision:
    """Approves or rejects a pre-checkout query. Answers Telegram exactly once, fail-closed."""
    logger.info(f"💳 Pre-checkout query {event.query_id} from user {event.payer_id}, amount {event.total_amount} Stars")
    try:
        decision, product = _decide_pre_checkout(services, event)
        if decision.reason == "price mismatch":
            await log_fraud_alert(bot, event.payer_id, event.payer_username, product.id, product.price, event.total_amount)
        elif decision.approved:
            services.pending.register(event.query_id, event.payer_id, product.id)
            await log_transaction(bot, event.payer_id, event.payer_username, product, "pre_checkout")
    except Exception as e:
        logger.error(f"❌ Error in pre-checkout {event.query_id}: {e}", exc_info=True)
        await send_error_log(bot, e, "Pre-checkout Handler")
        decision = CheckoutDecision.reject("internal error", GENERIC_RETRY_MESSAGE)

    await _answer_pre_checkout(bot, services, event, decision)
    if decision.approved:
        logger.info(f"✅ Pre-checkout approved for user {event.payer_id}")
    else:
        logger.info(f"Pre-checkout {event.query_id} rejected: {decision.reason}")
    return decision


# --- Payment Fulfillment ---
def _resolve_paid_product(services: PaymentServices, event: PaymentEvent) -> Product:
    payload = InvoicePayload.decode(event.invoice_payload, services.payload_secret)
    product = services.catalog.get(payload.product_id)
    if not product:
        raise InvalidProductReference(payload.product_id)
    if event.total_amount != product.price:
        raise AmountMismatch(product.price, event.total_amount)
    return product


async def deliver_coins(bot, services: PaymentServices, payer_id: int, coins: int) -> bool:
    """Tells the payer their coins are ready; the mini app credits them on open."""
    logger.info(f"💰 Adding {coins} coins to user {payer_id} via Cloud Storage")
    reply_markup = None
    if services.web_app_url:
        app_url = f"{services.web_app_url}?coins={coins}&uid={payer_id}&t={_now_ms()}"
        reply_markup = InlineKeyboardMarkup([[
            InlineKeyboardButton("🎮 Open App & Collect Coins", web_app=WebAppInfo(url=app_url))
        ]])
    sent = await send_message_with_retry(
        bot, payer_id,
        f"✅ <b>Payment Successful!</b>\n\n"
        f"{coins} 🪙 Void Coins have been added to your account!\n\n"
        f"Open the app to see your new balance.",
        reply_markup=reply_markup,
        parse_mode=ParseMode.HTML,
        timeout=services.provider_timeout,
        retry_on_network_error=False,
    )
    return sent is not None


async def _handle_failed_fulfillment(bot, services: PaymentServices, event: PaymentEvent, error: Exception, recorded: bool = False) -> None:
    """Money is captured but goods are not delivered: tell the payer, persist the trail, alert operators."""
    charge_id = event.charge_id
    logger.critical(f"❌ CRITICAL ERROR processing payment {charge_id} for user {event.payer_id}: {error}", exc_info=error)
    await send_error_log(bot, error, f"Successful Payment - Charge: {charge_id}")

    try:
        await send_message_with_retry(
            bot, event.chat_id or event.payer_id,
            f"⚠️ <b>Payment Received - Processing Issue</b>\n\n"
            f"Your payment was successful, but there was an error delivering your coins. "
            f"Don't worry - our team will resolve this shortly!\n\n"
            f"<b>Payment Details:</b>\n"
            f"Charge ID: <code>{charge_id}</code>\n"
            f"Amount: {event.total_amount} ⭐\n\n"
            f"Please contact support with the Charge ID above if your coins don't arrive within 24 hours.",
            parse_mode=ParseMode.HTML,
            timeout=services.provider_timeout,
        )
    except Exception as notify_e:
        logger.error(f"Failed to notify user {event.payer_id} about processing issue for charge {charge_id}: {notify_e}")

    try:
        await services.store.append_failed_delivery(event.payer_id, charge_id, repr(error))
    except Exception as store_e:
        logger.critical(f"🚨 Could not persist failed delivery for charge {charge_id}, user {event.payer_id}: {store_e}")

    await log_delivery_failed(bot, event.payer_id, charge_id, error, recorded=recorded)


async def fulfill_payment(bot, services: PaymentServices, event: PaymentEvent) -> FulfillmentOutcome:
    """
    Handles a successful_payment update.

    Re-validates product and amount, records the payment once per charge id and
    delivers the coins. Duplicate updates for a known charge id are no-ops. Any
    failure after capture ends in the failed-delivery trail, never silently.
    """
    logger.info(
        f"🎉 PAYMENT SUCCESSFUL! User {event.payer_id} (@{event.payer_username or 'no_username'}), "
        f"{event.total_amount} stars, charge {event.charge_id}"
    )
    recorded = False
    try:
        product = _resolve_paid_product(services, event)
        try:
            await services.store.append(
                payer_id=event.payer_id,
                charge_id=event.charge_id,
                provider_charge_id=event.provider_charge_id,
                product_id=product.id,
                amount_paid=product.price,
                quantity_delivered=product.quantity,
                created_at_ms=_now_ms(),
            )
        except DuplicatePayment:
            logger.warning(f"Duplicate successful_payment for charge {event.charge_id}; already recorded, skipping delivery.")
            return FulfillmentOutcome.DUPLICATE
        recorded = True

        delivered = await deliver_coins(bot, services, event.payer_id, product.quantity)
        if not delivered:
            raise DeliveryFailure("Failed to send coin notification")

        await log_transaction(
            bot, event.payer_id, event.payer_username, product, "success",
            charge_id=event.charge_id, provider_charge_id=event.provider_charge_id
        )
        logger.info(f"✅ Payment {event.charge_id} processed: {product.quantity} coins sent to user {event.payer_id}")
        return FulfillmentOutcome.DELIVERED
    except Exception as e:
        await _handle_failed_fulfillment(bot, services, event, e, recorded=recorded)
        return FulfillmentOutcome.FAILED


# --- Refund Processor ---
async def process_refund(bot, services: PaymentServices, charge_id: str, requested_by: int, requested_by_name: str | None = None) -> RefundResult:
    """
    Refunds a recorded Stars payment once.

    Raises Unauthorized, MissingParameter, PaymentNotFound, AlreadyRefunded or
    RefundFailed. On RefundFailed the record is left unrefunded.
    """
    if requested_by not in services.admin_ids:
        logger.warning(f"Unauthorized refund attempt by user {requested_by} for charge {charge_id}")
        raise Unauthorized("Unauthorized. Admin only.")
    charge_id = (charge_id or "").strip()
    if not charge_id:
        raise MissingParameter("charge_id")

    async with services.refund_lock:
        record = await services.store.get(charge_id)
        if record is None:
            raise PaymentNotFound(charge_id)
        if record.refunded:
            raise AlreadyRefunded(charge_id)

        logger.info(f"Refunding charge {charge_id} ({record.amount_paid} stars) for user {record.payer_id}, requested by {requested_by}")
        try:
            refunded = await call_provider(bot.refund_star_payment(
                user_id=record.payer_id, telegram_payment_charge_id=charge_id
            ), services.provider_timeout)
        except Exception as e:
            logger.error(f"❌ Refund error for charge {charge_id}: {e}", exc_info=True)
            await send_error_log(bot, e, f"Refund - Charge: {charge_id}")
            raise RefundFailed(str(e) or type(e).__name__) from e
        if not refunded:
            logger.error(f"❌ Telegram declined refund for charge {charge_id}")
            raise RefundFailed("Refund was not accepted by Telegram")

        try:
            record = await services.store.mark_refunded(charge_id)
        except Exception as e:
            logger.critical(f"🚨 Stars refunded for charge {charge_id} but record update FAILED: {e}. Mark it refunded manually!", exc_info=True)
            await send_error_log(bot, e, f"Refund bookkeeping - Charge: {charge_id}")
            raise

    await log_refund_processed(bot, record, requested_by_name or requested_by)
    sent = await send_message_with_retry(
        bot, record.payer_id,
        f"💸 Your payment has been refunded!\n\n"
        f"Stars refunded: {record.amount_paid}\n"
        f"Reason: Manual refund by admin",
        timeout=services.provider_timeout,
    )
    return RefundResult(
        charge_id=charge_id,
        payer_id=record.payer_id,
        stars_refunded=record.amount_paid,
        refunded_at=record.refunded_at,
        payer_notified=sent is not None,
    )


# --- Telegram Handlers ---
async def handle_pre_checkout_query(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.pre_checkout_query
    if not query: return
    await validate_pre_checkout(context.bot, get_services(context), PreCheckoutEvent.from_query(query))


async def handle_successful_payment(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.message
    if not message or not message.successful_payment: return
    await fulfill_payment(context.bot, get_services(context), PaymentEvent.from_message(message))


async def handle_refund_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """/refund <charge_id> (admins only)"""
    if not update.effective_user or not update.effective_chat: return
    chat_id = update.effective_chat.id
    admin = update.effective_user
    charge_id = " ".join(context.args or [])

    try:
        result = await process_refund(context.bot, get_services(context), charge_id, admin.id, admin.username or admin.id)
    except Unauthorized:
        await send_message_with_retry(context.bot, chat_id, "❌ Unauthorized. Admin only.")
        return
    except MissingParameter:
        await send_message_with_retry(context.bot, chat_id, "Usage: /refund <charge_id>")
        return
    except PaymentNotFound:
        await send_message_with_retry(context.bot, chat_id, f"❌ Payment not found: {charge_id.strip()}")
        return
    except AlreadyRefunded:
        await send_message_with_retry(context.bot, chat_id, f"⚠️ Already refunded: {charge_id.strip()}")
        return
    except RefundFailed:
        await send_message_with_retry(context.bot, chat_id, "❌ Refund failed. Check logs.")
        return
    except Exception as e:
        logger.error(f"❌ Refund error: {e}", exc_info=True)
        await send_message_with_retry(context.bot, chat_id, f"❌ Error: {e}")
        return

    await send_message_with_retry(
        context.bot, chat_id,
        f"✅ Refund successful!\n\nUser: {result.payer_id}\nStars: {result.stars_refunded}"
    )


async def sweep_pending_checkouts_job(context: ContextTypes.DEFAULT_TYPE):
    logger.debug("Running background job: sweep_pending_checkouts")
    try:
        get_services(context).pending.sweep()
    except Exception as e:
        logger.error(f"Error in background job sweep_pending_checkouts: {e}", exc_info=True)

# --- END OF FILE payment.py ---
