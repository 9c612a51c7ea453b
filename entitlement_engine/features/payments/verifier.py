"""
Payment reconciliation for the two paid paths.

Stripe: we only hold a hosted payment link. open_stripe_checkout() tags the
link with a random client_reference_id, leaves a pending-checkout breadcrumb
and hands the URL off. Completion arrives later as a PaymentSuccess
breadcrumb written by the redirect callback; the manager consumes it.
There is no server-side subscription lookup, so verify_stripe_subscription()
always reports valid.

Crypto: the user pays from their own wallet and submits the transaction hash.
confirm_crypto_payment() accepts it immediately (access before on-chain
confirmation). verify_crypto_payment() later asks the chain's block explorer
whether the transaction was mined. If the explorer cannot be reached or
answers with garbage the result is inconclusive and the entitlement stays.
"""
from __future__ import annotations

import inspect
import logging
import re
import secrets
import time
from typing import Callable, Optional

import httpx

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import ConfigurationError, NetworkError, ValidationError
from entitlement_engine.core.logging import log_event, mask_hash
from entitlement_engine.features.payments.chains import chain_currency, explorer_api_url, get_chain_info
from entitlement_engine.features.payments.config_store import is_real_crypto_address
from entitlement_engine.features.payments.provider import OpenExternalUrl, PriceLookup, StaticPriceLookup
from entitlement_engine.features.subscriptions.state_store import CheckoutBreadcrumbs
from entitlement_engine.models.billing import (
    CryptoPaymentRequest,
    PaymentConfig,
    PaymentMethodType,
    PaymentSuccess,
    PendingCheckout,
)
from entitlement_engine.models.plan import PlanId


logger = logging.getLogger("entitlements")

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def epoch_ms() -> int:
    return int(time.time() * 1000)


def new_correlation_id(now_ms: int) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"ent_{now_ms}_{suffix}"


def with_client_reference(url: str, client_reference_id: str) -> str:
    try:
        return str(httpx.URL(url).copy_set_param("client_reference_id", client_reference_id))
    except httpx.InvalidURL:
        sep = "&" if "?" in url else "?"
        return f"{url}{sep}client_reference_id={client_reference_id}"


class PaymentVerifier:
    def __init__(
        self,
        breadcrumbs: CheckoutBreadcrumbs,
        *,
        opener: Optional[OpenExternalUrl] = None,
        price_lookup: Optional[PriceLookup] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.breadcrumbs = breadcrumbs
        self.opener = opener
        self.price_lookup = price_lookup or StaticPriceLookup()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.EXPLORER_TIMEOUT_SECONDS
        self.client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=self.timeout_seconds))
        self.clock = clock

    # Stripe ---------------------------------------------------------------

    async def open_stripe_checkout(self, config: PaymentConfig) -> str:
        """
        Start a hosted Stripe checkout.

        Returns:
            The URL handed to the opener

        Raises:
            ConfigurationError: If no payment link or opener is configured
        """
        if not config.stripe_payment_link_beta:
            raise ConfigurationError("Stripe payment not configured")
        if self.opener is None:
            raise ConfigurationError("No URL opener configured")

        now = self.clock()
        client_reference_id = new_correlation_id(now)
        await self.breadcrumbs.save_pending_checkout(
            PendingCheckout(
                plan=PlanId.BETA,
                type=PaymentMethodType.STRIPE,
                client_reference_id=client_reference_id,
                timestamp=now,
            )
        )

        url = with_client_reference(config.stripe_payment_link_beta, client_reference_id)
        result = self.opener(url)
        if inspect.isawaitable(result):
            await result

        log_event(
            "info",
            "[billing] stripe checkout opened",
            event_type="checkout.stripe.opened",
            extra={"client_reference_id": client_reference_id},
        )
        return url

    async def record_stripe_success(
        self,
        customer_id: Optional[str],
        subscription_id: Optional[str],
        client_reference_id: Optional[str] = None,
    ) -> PaymentSuccess:
        """
        Write the breadcrumb the redirect callback leaves after checkout.

        When a client_reference_id is given it must match the pending checkout.

        Raises:
            ValidationError: If the reference does not match a pending stripe checkout
        """
        if client_reference_id is not None:
            pending = await self.breadcrumbs.load_pending_checkout()
            if (
                pending is None
                or pending.type != PaymentMethodType.STRIPE
                or pending.client_reference_id != client_reference_id
            ):
                raise ValidationError("No pending checkout matches this reference")

        success = PaymentSuccess(
            type=PaymentMethodType.STRIPE,
            customer_id=customer_id,
            subscription_id=subscription_id,
            client_reference_id=client_reference_id,
            timestamp=self.clock(),
        )
        await self.breadcrumbs.record_payment_success(success)
        await self.breadcrumbs.clear_pending_checkout()
        return success

    async def verify_stripe_subscription(self, subscription_id: Optional[str]) -> bool:
        # Known gap: the client has no secret key, so nothing can be checked here.
        logger.warning(
            "[billing] stripe subscription check is not implemented, reporting valid",
            extra={"event_type": "verify.stripe.stub"},
        )
        return True

    # Crypto ---------------------------------------------------------------

    async def initiate_crypto_payment(self, config: PaymentConfig, chain_id: int = 1) -> CryptoPaymentRequest:
        """
        Build the payment request the wallet should sign.

        Raises:
            ConfigurationError: If no real recipient address is configured
            ValidationError: If chain_id is not in supported_chains
        """
        if not is_real_crypto_address(config.crypto_recipient_address):
            raise ConfigurationError("Crypto payment not configured")

        if chain_id not in config.supported_chains:
            raise ValidationError(f"Chain {chain_id} not supported")

        usd_per_native = await self.price_lookup.usd_per_native(chain_id)
        if usd_per_native <= 0:
            raise NetworkError(f"No usable price for chain {chain_id}")
        native_amount = config.beta_price_usd / usd_per_native

        info = get_chain_info(chain_id)
        request = CryptoPaymentRequest(
            to=config.crypto_recipient_address,
            amount=f"{native_amount:.8f}",
            chain_id=chain_id,
            chain_name=info.name if info else "Unknown",
            currency=chain_currency(chain_id),
            usd_amount=config.beta_price_usd,
        )

        await self.breadcrumbs.save_pending_checkout(
            PendingCheckout(
                plan=PlanId.BETA,
                type=PaymentMethodType.CRYPTO,
                chain_id=chain_id,
                timestamp=self.clock(),
            )
        )
        return request

    async def confirm_crypto_payment(self, tx_hash: str, from_address: str, chain_id: int) -> PaymentSuccess:
        """
        Accept a user-submitted transaction and leave a success breadcrumb.

        Raises:
            ValidationError: If tx_hash is not 0x + 64 hex characters
        """
        if not tx_hash or not TX_HASH_RE.match(tx_hash):
            raise ValidationError("Invalid transaction hash")

        success = PaymentSuccess(
            type=PaymentMethodType.CRYPTO,
            tx_hash=tx_hash,
            from_address=from_address,
            chain_id=chain_id,
            timestamp=self.clock(),
        )
        await self.breadcrumbs.record_payment_success(success)
        await self.breadcrumbs.clear_pending_checkout()
        return success

    async def fetch_transaction(self, tx_hash: str, chain_id: int, api_key: Optional[str] = None) -> httpx.Response:
        params = {
            "module": "proxy",
            "action": "eth_getTransactionByHash",
            "txhash": tx_hash,
        }
        if api_key:
            params["apikey"] = api_key
        async with self.client_factory() as client:
            return await client.get(explorer_api_url(chain_id), params=params)

    async def verify_crypto_payment(self, tx_hash: Optional[str], chain_id: Optional[int], api_key: Optional[str] = None) -> bool:
        """
        Ask the explorer whether tx_hash has been mined.

        Returns False when there is no hash, the explorer answers non-2xx, or
        the transaction has no blockNumber yet. Network and parse failures are
        inconclusive and return True so the current entitlement is kept.
        """
        if not tx_hash:
            return False
        chain = chain_id or 1

        try:
            response = await self.fetch_transaction(tx_hash, chain, api_key)
            if not response.is_success:
                return False
            try:
                data = response.json()
            except ValueError as exc:
                raise NetworkError(f"Explorer returned invalid JSON: {exc}")
        except (httpx.HTTPError, NetworkError) as exc:
            log_event(
                "warning",
                "[billing] crypto verification inconclusive, keeping entitlement",
                event_type="verify.crypto.inconclusive",
                error_code=NetworkError.code,
                extra={"tx_hash": mask_hash(tx_hash), "chain_id": chain, "error": exc},
            )
            return True

        result = data.get("result") if isinstance(data, dict) else None
        mined = isinstance(result, dict) and bool(result.get("blockNumber"))
        if not mined:
            log_event(
                "info",
                "[billing] crypto payment not yet mined",
                event_type="verify.crypto.pending",
                extra={"tx_hash": mask_hash(tx_hash), "chain_id": chain},
            )
        return mined
