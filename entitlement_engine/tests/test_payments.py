"""Stripe hand-off and crypto payment verification."""
import httpx
import pytest

from entitlement_engine.core.errors import ConfigurationError, ValidationError
from entitlement_engine.features.payments.chains import chain_name, explorer_api_url
from entitlement_engine.features.payments.provider import StaticPriceLookup
from entitlement_engine.features.payments.verifier import PaymentVerifier, new_correlation_id, with_client_reference
from entitlement_engine.features.subscriptions.state_store import (
    PAYMENT_SUCCESS_KEY,
    PENDING_CHECKOUT_KEY,
    CheckoutBreadcrumbs,
)
from entitlement_engine.models.billing import PaymentMethodType
from entitlement_engine.tests.mocks import (
    RECIPIENT,
    T0,
    TX_HASH,
    explorer_factory,
    mined_handler,
    pending_handler,
    unreachable_handler,
)


def _verifier(store, clock, opener=None, handler=mined_handler, **kwargs):
    return PaymentVerifier(
        CheckoutBreadcrumbs(store),
        opener=opener,
        client_factory=explorer_factory(handler),
        clock=clock,
        **kwargs,
    )


def test_correlation_id_shape():
    cid = new_correlation_id(T0)
    prefix, ms, suffix = cid.split("_")
    assert prefix == "ent"
    assert ms == str(T0)
    assert len(suffix) == 9
    assert suffix.isalnum() and suffix == suffix.lower()


def test_client_reference_is_appended_to_existing_query():
    url = with_client_reference("https://buy.stripe.com/test_abc?prefilled_email=a%40b.c", "ent_1_x")
    parsed = httpx.URL(url)
    assert parsed.params["client_reference_id"] == "ent_1_x"
    assert parsed.params["prefilled_email"] == "a@b.c"


def test_chain_lookups():
    assert chain_name(8453) == "Base"
    assert chain_name(10) == "Chain 10"
    assert explorer_api_url(137) == "https://api.polygonscan.com/api"
    assert explorer_api_url(10) == "https://api.etherscan.io/api"


# Stripe -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stripe_checkout_tags_url_and_leaves_breadcrumb(store, clock, opener, payment_defaults):
    verifier = _verifier(store, clock, opener)
    url = await verifier.open_stripe_checkout(payment_defaults)

    assert opener.urls == [url]
    assert url.startswith("https://buy.stripe.com/test_abc?client_reference_id=ent_")

    pending = await CheckoutBreadcrumbs(store).load_pending_checkout()
    assert pending.type == PaymentMethodType.STRIPE
    assert pending.timestamp == T0
    assert httpx.URL(url).params["client_reference_id"] == pending.client_reference_id


@pytest.mark.asyncio
async def test_stripe_checkout_awaits_async_opener(store, clock, payment_defaults):
    opened = []

    async def opener(url):
        opened.append(url)

    url = await _verifier(store, clock, opener).open_stripe_checkout(payment_defaults)
    assert opened == [url]


@pytest.mark.asyncio
async def test_stripe_checkout_requires_link(store, clock, opener, payment_defaults):
    config = payment_defaults.model_copy(update={"stripe_payment_link_beta": ""})
    with pytest.raises(ConfigurationError):
        await _verifier(store, clock, opener).open_stripe_checkout(config)
    assert opener.urls == []
    assert await store.get([PENDING_CHECKOUT_KEY]) == {}


@pytest.mark.asyncio
async def test_stripe_success_must_match_pending_reference(store, clock, opener, payment_defaults):
    verifier = _verifier(store, clock, opener)
    url = await verifier.open_stripe_checkout(payment_defaults)
    reference = httpx.URL(url).params["client_reference_id"]

    with pytest.raises(ValidationError):
        await verifier.record_stripe_success("cus_1", "sub_1", "ent_0_forged")
    assert await store.get([PAYMENT_SUCCESS_KEY]) == {}

    success = await verifier.record_stripe_success("cus_1", "sub_1", reference)
    assert success.customer_id == "cus_1"
    assert await store.get([PENDING_CHECKOUT_KEY]) == {}
    assert PAYMENT_SUCCESS_KEY in await store.get([PAYMENT_SUCCESS_KEY])


@pytest.mark.asyncio
async def test_stripe_success_without_reference_is_recorded(store, clock):
    await _verifier(store, clock).record_stripe_success("cus_1", "sub_1")
    raw = (await store.get([PAYMENT_SUCCESS_KEY]))[PAYMENT_SUCCESS_KEY]
    assert raw["type"] == "stripe"
    assert raw["subscriptionId"] == "sub_1"


@pytest.mark.asyncio
async def test_stripe_subscription_check_reports_valid(store, clock):
    assert await _verifier(store, clock).verify_stripe_subscription("sub_1") is True


# Crypto -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_crypto_payment_on_mainnet(store, clock, payment_defaults):
    request = await _verifier(store, clock).initiate_crypto_payment(payment_defaults, 1)
    assert request.to == RECIPIENT
    assert request.amount == "0.00200000"
    assert request.chain_id == 1
    assert request.chain_name == "Ethereum Mainnet"
    assert request.currency == "ETH"
    assert request.usd_amount == 5.0

    pending = await CheckoutBreadcrumbs(store).load_pending_checkout()
    assert pending.type == PaymentMethodType.CRYPTO
    assert pending.chain_id == 1


@pytest.mark.asyncio
async def test_initiate_crypto_payment_on_polygon(store, clock, payment_defaults):
    request = await _verifier(store, clock).initiate_crypto_payment(payment_defaults, 137)
    assert request.amount == "10.00000000"
    assert request.currency == "MATIC"


@pytest.mark.asyncio
async def test_initiate_crypto_payment_uses_injected_price(store, clock, payment_defaults):
    verifier = _verifier(store, clock, price_lookup=StaticPriceLookup({1: 4000.0}))
    request = await verifier.initiate_crypto_payment(payment_defaults, 1)
    assert request.amount == "0.00125000"


@pytest.mark.asyncio
async def test_initiate_rejects_unsupported_chain(store, clock, payment_defaults):
    with pytest.raises(ValidationError) as exc:
        await _verifier(store, clock).initiate_crypto_payment(payment_defaults, 10)
    assert exc.value.message == "Chain 10 not supported"
    assert await store.get([PENDING_CHECKOUT_KEY]) == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("address", ["", "0x0000000000000000000000000000000000000000"])
async def test_initiate_requires_real_recipient(store, clock, payment_defaults, address):
    config = payment_defaults.model_copy(update={"crypto_recipient_address": address})
    with pytest.raises(ConfigurationError):
        await _verifier(store, clock).initiate_crypto_payment(config, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("tx_hash", ["", "0x123", "ab" * 32, "0x" + "zz" * 32, TX_HASH + "00"])
async def test_confirm_rejects_malformed_hash(store, clock, tx_hash):
    with pytest.raises(ValidationError):
        await _verifier(store, clock).confirm_crypto_payment(tx_hash, RECIPIENT, 1)
    assert await store.get([PAYMENT_SUCCESS_KEY]) == {}


@pytest.mark.asyncio
async def test_confirm_records_breadcrumb(store, clock):
    success = await _verifier(store, clock).confirm_crypto_payment(TX_HASH, RECIPIENT, 8453)
    assert success.chain_id == 8453
    raw = (await store.get([PAYMENT_SUCCESS_KEY]))[PAYMENT_SUCCESS_KEY]
    assert raw["txHash"] == TX_HASH
    assert raw["fromAddress"] == RECIPIENT


@pytest.mark.asyncio
async def test_verify_mined_transaction(store, clock):
    seen = []

    def handler(request):
        seen.append(request)
        return mined_handler(request)

    assert await _verifier(store, clock, handler=handler).verify_crypto_payment(TX_HASH, 8453, "KEY") is True
    request = seen[0]
    assert request.url.host == "api.basescan.org"
    assert request.url.params["module"] == "proxy"
    assert request.url.params["action"] == "eth_getTransactionByHash"
    assert request.url.params["txhash"] == TX_HASH
    assert request.url.params["apikey"] == "KEY"


@pytest.mark.asyncio
async def test_verify_omits_empty_api_key(store, clock):
    seen = []

    def handler(request):
        seen.append(request)
        return mined_handler(request)

    await _verifier(store, clock, handler=handler).verify_crypto_payment(TX_HASH, 1, "")
    assert "apikey" not in seen[0].url.params


@pytest.mark.asyncio
async def test_verify_pending_transaction_is_false(store, clock):
    assert await _verifier(store, clock, handler=pending_handler).verify_crypto_payment(TX_HASH, 1) is False


@pytest.mark.asyncio
async def test_verify_non_2xx_is_false(store, clock):
    def handler(request):
        return httpx.Response(503, json={"message": "busy"})

    assert await _verifier(store, clock, handler=handler).verify_crypto_payment(TX_HASH, 1) is False


@pytest.mark.asyncio
async def test_verify_without_hash_is_false(store, clock):
    assert await _verifier(store, clock).verify_crypto_payment(None, 1) is False


@pytest.mark.asyncio
async def test_verify_unreachable_explorer_keeps_entitlement(store, clock):
    assert await _verifier(store, clock, handler=unreachable_handler).verify_crypto_payment(TX_HASH, 1) is True


@pytest.mark.asyncio
async def test_verify_invalid_json_keeps_entitlement(store, clock):
    def handler(request):
        return httpx.Response(200, content=b"<html>rate limited</html>")

    assert await _verifier(store, clock, handler=handler).verify_crypto_payment(TX_HASH, 1) is True


@pytest.mark.asyncio
async def test_verify_timeout_keeps_entitlement(store, clock):
    def handler(request):
        raise httpx.ReadTimeout("slow explorer", request=request)

    assert await _verifier(store, clock, handler=handler).verify_crypto_payment(TX_HASH, 137) is True
