"""
Test Helpers for Stars Payment System
Mock Telegram bot and event generators for testing without touching the Bot API.
"""

import random
import string
import time
from typing import List, Dict, Optional
from unittest.mock import AsyncMock, Mock

from telegram.error import Forbidden

from catalog import load_catalog
from payment import InvoicePayload, PaymentServices, PreCheckoutEvent, PaymentEvent
from payment_store import PaymentStore
from pending_checkouts import PendingCheckoutTracker

TEST_SECRET = "test-payload-secret"
TEST_ADMIN_ID = 111111111
TEST_USER_ID = 999999999
TEST_LOG_CHAT_ID = "-1001234567890"
TEST_WEB_APP_URL = "https://example.org/app"


class MockTelegramBot:
    """Factory for AsyncMock bots mimicking the Bot API calls the payment flow uses."""

    @staticmethod
    def create(invoice_link: str = "https://t.me/$invoice123", refund_ok: bool = True) -> AsyncMock:
        bot = AsyncMock()
        bot.create_invoice_link.return_value = invoice_link
        bot.answer_pre_checkout_query.return_value = True
        bot.refund_star_payment.return_value = refund_ok
        bot.send_message.return_value = Mock(message_id=random.randint(1, 10**6))
        return bot

    @staticmethod
    def create_failing_delivery(payer_id: int) -> AsyncMock:
        """Bot that was blocked by the payer (log channel still works)."""
        bot = MockTelegramBot.create()

        async def send_message(chat_id=None, **kwargs):
            if chat_id == payer_id:
                raise Forbidden("Forbidden: bot was blocked by the user")
            return Mock(message_id=1)

        bot.send_message.side_effect = send_message
        return bot

    @staticmethod
    def messages_to(bot: AsyncMock, chat_id) -> List[Dict]:
        return [c.kwargs for c in bot.send_message.call_args_list if c.kwargs.get('chat_id') == chat_id]

    @staticmethod
    def log_entries(bot: AsyncMock, topic_id: Optional[int] = None) -> List[str]:
        return [
            c.kwargs['text'] for c in bot.send_message.call_args_list
            if c.kwargs.get('chat_id') == TEST_LOG_CHAT_ID
            and (topic_id is None or c.kwargs.get('message_thread_id') == topic_id)
        ]


class TestDataGenerator:
    """Generate realistic test data for payment testing."""
    __test__ = False

    @staticmethod
    def generate_charge_id() -> str:
        suffix = ''.join(random.choices(string.ascii_letters + string.digits, k=24))
        return f"stxTest{suffix}"

    @staticmethod
    def create_services(db_path: str, ttl_seconds: int = 3600, max_entries: int = 10000) -> PaymentServices:
        return PaymentServices(
            catalog=load_catalog(),
            store=PaymentStore(db_path),
            pending=PendingCheckoutTracker(ttl_seconds=ttl_seconds, max_entries=max_entries),
            admin_ids=frozenset({TEST_ADMIN_ID}),
            payload_secret=TEST_SECRET,
            web_app_url=TEST_WEB_APP_URL,
            provider_timeout=2,
        )

    @staticmethod
    def make_payload(product_id: str, payer_id: int = TEST_USER_ID, price: int = 25, quantity: int = 250, secret: str = TEST_SECRET) -> str:
        return InvoicePayload(
            product_id=product_id,
            payer_id=payer_id,
            issued_at_ms=int(time.time() * 1000),
            price=price,
            quantity=quantity,
        ).encode(secret)

    @staticmethod
    def create_pre_checkout(product_id: str = "package_mini", declared_amount: int = 25, payer_id: int = TEST_USER_ID, payload: Optional[str] = None) -> PreCheckoutEvent:
        return PreCheckoutEvent(
            query_id=f"pcq_{random.randint(10**8, 10**9)}",
            payer_id=payer_id,
            payer_username="test_user",
            invoice_payload=payload if payload is not None else TestDataGenerator.make_payload(product_id, payer_id),
            total_amount=declared_amount,
        )

    @staticmethod
    def create_payment(product_id: str = "package_mini", total_amount: int = 25, charge_id: Optional[str] = None, payer_id: int = TEST_USER_ID, payload: Optional[str] = None) -> PaymentEvent:
        return PaymentEvent(
            charge_id=charge_id or TestDataGenerator.generate_charge_id(),
            provider_charge_id=None,
            total_amount=total_amount,
            invoice_payload=payload if payload is not None else TestDataGenerator.make_payload(product_id, payer_id),
            payer_id=payer_id,
            payer_username="test_user",
            chat_id=payer_id,
        )


class PaymentScenario:
    """Pre-configured payment test scenarios (product id, declared amount, expected outcome)."""

    @staticmethod
    def scenario_exact_price():
        return {'name': 'Exact Price', 'product_id': 'package_mini', 'amount': 25, 'approved': True}

    @staticmethod
    def scenario_overpriced():
        return {'name': 'Declared Above Catalog', 'product_id': 'package_mini', 'amount': 30, 'approved': False}

    @staticmethod
    def scenario_underpriced():
        return {'name': 'Cheap Invoice For Expensive Product', 'product_id': 'package_giant', 'amount': 1, 'approved': False}

    @staticmethod
    def scenario_tiny():
        return {'name': 'Tiny Package', 'product_id': 'package_tiny', 'amount': 1, 'approved': True}

    @staticmethod
    def all_scenarios():
        return [
            PaymentScenario.scenario_exact_price(),
            PaymentScenario.scenario_overpriced(),
            PaymentScenario.scenario_underpriced(),
            PaymentScenario.scenario_tiny(),
        ]
