import httpx
import orjson
import pytest

from coinclash.core.exceptions import (
    DuplicatePaymentError,
    GatewayUnavailableError,
    PaymentError,
    SignatureMismatchError,
    ValidationError,
)
from coinclash.core.payments import PaymentGateway, Payments

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"


def gateway_transport(requests, status_code=200):
    """Fake orders endpoint that echoes the amount back with a fresh order id."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": {"description": "boom"}})
        payload = orjson.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": f"order_{len(requests)}",
                "amount": payload["amount"],
                "currency": payload["currency"],
                "status": "created",
            },
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def sent():
    return []


@pytest.fixture
def gateway(sent):
    return PaymentGateway(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        base_url="https://gateway.test/v1",
        transport=gateway_transport(sent),
    )


@pytest.fixture
def service(database, ledger, gateway):
    return Payments(database, gateway=gateway, ledger=ledger)


async def test_create_order_records_pending_deposit(service, ledger, make_user, sent):
    user = make_user()

    order = await service.create_order(user["id"], 250)

    assert order == {"order_id": "order_1", "amount": 25000, "currency": "INR", "key_id": KEY_ID}
    request = sent[0]
    assert request.url.path == "/v1/orders"
    assert request.headers["authorization"].startswith("Basic ")

    pending = ledger.get_transactions(user["id"], limit=1)[0]
    assert pending["type"] == "deposit"
    assert pending["status"] == "pending"
    assert pending["order_id"] == "order_1"
    assert ledger.get_wallet(user["id"])["balance"] == 0


async def test_gateway_error_creates_nothing(database, ledger, make_user):
    user = make_user()
    failing = PaymentGateway(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        base_url="https://gateway.test/v1",
        transport=gateway_transport([], status_code=500),
    )
    service = Payments(database, gateway=failing, ledger=ledger)

    with pytest.raises(GatewayUnavailableError):
        await service.create_order(user["id"], 100)
    assert ledger.get_transactions(user["id"]) == []


async def test_unconfigured_gateway_is_unavailable(database, ledger, make_user):
    user = make_user()
    service = Payments(database, gateway=PaymentGateway(key_id="", key_secret=""), ledger=ledger)

    with pytest.raises(GatewayUnavailableError):
        await service.create_order(user["id"], 100)


@pytest.mark.parametrize("amount", [0, -5, 100001, "100", True])
async def test_order_amount_bounds(service, make_user, amount):
    user = make_user()
    with pytest.raises(ValidationError):
        await service.create_order(user["id"], amount)


async def test_unsupported_currency(service, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        await service.create_order(user["id"], 100, currency="BTC")


async def test_verified_payment_credits_once(service, gateway, ledger, make_user):
    user = make_user()
    order = await service.create_order(user["id"], 100)
    signature = gateway.sign(order["order_id"], "pay_1")

    result = service.verify_payment(user["id"], order["order_id"], "pay_1", signature, amount=100)

    assert result["success"] is True
    assert result["amount"] == 100
    assert result["balance"] == 100
    wallet = ledger.get_wallet(user["id"])
    assert wallet["total_deposits"] == 100
    deposit = ledger.get_transactions(user["id"], limit=1)[0]
    assert deposit["status"] == "completed"
    assert deposit["payment_id"] == "pay_1"
    assert deposit["balance_after"] == 100

    with pytest.raises(DuplicatePaymentError):
        service.verify_payment(user["id"], order["order_id"], "pay_1", signature)
    assert ledger.get_wallet(user["id"])["balance"] == 100


async def test_payment_id_cannot_credit_a_second_order(service, gateway, ledger, make_user):
    user = make_user()
    first = await service.create_order(user["id"], 100)
    second = await service.create_order(user["id"], 100)
    service.verify_payment(user["id"], first["order_id"], "pay_1", gateway.sign(first["order_id"], "pay_1"))

    with pytest.raises(DuplicatePaymentError):
        service.verify_payment(user["id"], second["order_id"], "pay_1", gateway.sign(second["order_id"], "pay_1"))
    assert ledger.get_wallet(user["id"])["balance"] == 100


async def test_bad_signature_changes_nothing(service, ledger, make_user):
    user = make_user()
    order = await service.create_order(user["id"], 100)

    with pytest.raises(SignatureMismatchError):
        service.verify_payment(user["id"], order["order_id"], "pay_1", "0" * 64)

    assert ledger.get_wallet(user["id"])["balance"] == 0
    assert ledger.get_transactions(user["id"])[0]["status"] == "pending"


async def test_amount_mismatch_and_foreign_order(service, gateway, ledger, make_user):
    owner, other = make_user(), make_user()
    order = await service.create_order(owner["id"], 100)
    signature = gateway.sign(order["order_id"], "pay_1")

    with pytest.raises(PaymentError):
        service.verify_payment(owner["id"], order["order_id"], "pay_1", signature, amount=500)
    with pytest.raises(PaymentError):
        service.verify_payment(other["id"], order["order_id"], "pay_1", signature)
    with pytest.raises(PaymentError):
        service.verify_payment(owner["id"], "order_missing", "pay_1", gateway.sign("order_missing", "pay_1"))

    assert ledger.get_wallet(owner["id"])["balance"] == 0
    assert ledger.get_wallet(other["id"])["balance"] == 0


def test_missing_tokens_rejected(service, make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        service.verify_payment(user["id"], "", "pay_1", "sig")
    with pytest.raises(ValidationError):
        service.verify_payment(user["id"], "order_1", "pay_1", "x" * 500)


async def test_first_deposit_pays_referral_bonus(service, gateway, ledger, make_user):
    referrer = make_user()
    newcomer = make_user(referral_code=referrer["referral_code"])
    first = await service.create_order(newcomer["id"], 100)
    second = await service.create_order(newcomer["id"], 100)

    result = service.verify_payment(newcomer["id"], first["order_id"], "pay_1", gateway.sign(first["order_id"], "pay_1"))
    again = service.verify_payment(newcomer["id"], second["order_id"], "pay_2", gateway.sign(second["order_id"], "pay_2"))

    assert result["referral_bonus"] == 50
    assert again["referral_bonus"] is None
    assert ledger.get_wallet(newcomer["id"])["bonus_balance"] == 50
    assert ledger.get_wallet(referrer["id"])["bonus_balance"] == 50
    assert ledger.get_wallet(newcomer["id"])["balance"] == 200


def test_signature_helpers():
    gateway = PaymentGateway(key_id=KEY_ID, key_secret=KEY_SECRET)
    signature = gateway.sign("order_1", "pay_1")

    assert gateway.verify_signature("order_1", "pay_1", signature)
    assert not gateway.verify_signature("order_1", "pay_2", signature)
    assert not PaymentGateway(key_id="", key_secret="").verify_signature("order_1", "pay_1", signature)
