"""
Invoice API Tests
Drives the Flask routes with a mocked bot on a background event loop.
"""

import asyncio
import threading
from unittest.mock import Mock, patch

import pytest
from telegram.error import TelegramError

import main
from payment import SERVICES_KEY
from test_helpers import MockTelegramBot, TestDataGenerator, TEST_USER_ID


@pytest.fixture
def bot_loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


@pytest.fixture
def bot():
    return MockTelegramBot.create(invoice_link="https://t.me/$abc")


@pytest.fixture
def client(tmp_path, bot, bot_loop):
    services = TestDataGenerator.create_services(str(tmp_path / "http_payments.db"))
    telegram_app = Mock(bot=bot, bot_data={SERVICES_KEY: services})
    with patch.object(main, 'telegram_app', telegram_app), patch.object(main, 'main_loop', bot_loop), \
            patch('transaction_log.LOG_CHAT_ID', ""):
        yield main.flask_app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.data == b"OK"


def test_root_reports_service(client):
    data = client.get("/").get_json()
    assert data['status'] == 'online'
    assert data['version'] == main.BOT_VERSION
    assert 'openInvoice' in data['features']


def test_preflight_has_cors_headers(client):
    response = client.options("/create-invoice")
    assert response.status_code == 204
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert 'POST' in response.headers['Access-Control-Allow-Methods']


def test_create_invoice(client, bot):
    response = client.post("/create-invoice", json={'userId': TEST_USER_ID, 'productId': 'package_mini'})
    assert response.status_code == 200
    data = response.get_json()
    assert data == {
        'success': True,
        'invoiceLink': "https://t.me/$abc",
        'product': {'id': 'package_mini', 'title': 'Mini Package', 'stars': 25, 'coins': 250},
    }
    assert bot.create_invoice_link.call_args.kwargs['prices'][0].amount == 25


@pytest.mark.parametrize("body", [{}, {'userId': TEST_USER_ID}, {'productId': 'package_mini'}])
def test_create_invoice_missing_fields(client, bot, body):
    response = client.post("/create-invoice", json=body)
    assert response.status_code == 400
    data = response.get_json()
    assert data['error'] == 'Missing userId or productId'
    assert set(data['received']) == {'userId', 'productId'}
    bot.create_invoice_link.assert_not_called()


def test_create_invoice_non_json_body(client):
    response = client.post("/create-invoice", data="userId=1", content_type="text/plain")
    assert response.status_code == 400


def test_create_invoice_unknown_product(client):
    response = client.post("/create-invoice", json={'userId': TEST_USER_ID, 'productId': 'package_free'})
    assert response.status_code == 400
    data = response.get_json()
    assert data['error'] == 'Invalid product'
    assert data['productId'] == 'package_free'
    assert 'package_mini' in data['availableProducts']


def test_create_invoice_provider_failure(client, bot):
    bot.create_invoice_link.side_effect = TelegramError("Bot was blocked")
    response = client.post("/create-invoice", json={'userId': TEST_USER_ID, 'productId': 'package_mini'})
    assert response.status_code == 500
    assert response.get_json()['error'] == 'Failed to create invoice'


def test_create_invoice_before_startup():
    with patch.object(main, 'telegram_app', None), patch.object(main, 'main_loop', None):
        response = main.flask_app.test_client().post("/create-invoice", json={'userId': 1, 'productId': 'package_mini'})
    assert response.status_code == 503
