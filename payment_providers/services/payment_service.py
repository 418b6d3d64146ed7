from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

from redis.asyncio import Redis

from payment_providers.core.config import Settings, get_settings
from payment_providers.core.logging import bind_callback_context, get_logger
from payment_providers.integrations.payment_gateways import (
    ApiInfo,
    CallbackInfo,
    CallbackRequest,
    CallbackResponse,
    PaymentProvider,
    PaymentProviderFactory,
)
from payment_providers.integrations.payment_gateways.stripe_adapter import (
    BaseStripeAdapter,
    charge_order_reference,
    stripe_value,
)
from payment_providers.models.order import Order
from payment_providers.services.order_service import OrderRepository

logger = get_logger(__name__)

LOCK_PREFIX = "payment-providers:callback:idemp:"

# Stripe events that change an already finalized order
STRIPE_ORDER_UPDATE_EVENTS = ("charge.refunded", "charge.captured")


class ProviderNotFoundError(LookupError):
    pass


class OrderNotFoundError(LookupError):
    pass


def resolve_provider(
    provider_name: str,
    settings: Optional[Settings] = None,
) -> Tuple[PaymentProvider, Dict[str, str]]:
    """
    Create a provider and merge its default settings with the configured overrides.

    Raises:
        ProviderNotFoundError: If no provider is registered under provider_name
    """
    settings = settings or get_settings()
    if not PaymentProviderFactory.is_registered(provider_name):
        raise ProviderNotFoundError(provider_name)

    provider = PaymentProviderFactory.create_provider(
        provider_name,
        http_timeout_seconds=settings.http_timeout_seconds,
        http_connect_timeout_seconds=settings.http_connect_timeout_seconds,
    )
    return provider, provider.merge_settings(settings.get_provider_settings(provider_name))


async def _acquire_idempotency_lock(redis_client: Optional[Redis], key: str, ttl_seconds: int) -> bool:
    if redis_client is None:
        return True
    async with redis_client.pipeline(transaction=True) as pipe:
        pipe.setnx(key, 1)
        pipe.expire(key, ttl_seconds)
        created, _ = await pipe.execute()
        return bool(created)


async def _find_order(
    provider: PaymentProvider,
    provider_settings: Mapping[str, str],
    request: CallbackRequest,
    repository: OrderRepository,
    cart_number: Optional[str],
) -> Order:
    if not cart_number and provider.allows_callback_without_order_id:
        cart_number = await provider.get_cart_number(request, provider_settings)
    if not cart_number:
        raise OrderNotFoundError("no cart number in request")

    order = await repository.get_by_cart_number(cart_number)
    if order is None:
        raise OrderNotFoundError(cart_number)
    return order


def apply_callback_info(order: Order, callback_info: CallbackInfo) -> bool:
    """
    Write a verified callback to the order.

    An open order is finalized. A finalized order only takes the new state when
    it differs from the current one. Returns whether the order changed.
    """
    transaction = order.transaction_information
    if not order.is_finalized:
        order.finalize(
            callback_info.amount,
            callback_info.transaction_id,
            callback_info.payment_state,
            callback_info.payment_type,
            callback_info.payment_identifier,
        )
        return True

    if transaction.payment_state == callback_info.payment_state:
        return False

    transaction.amount_authorized = callback_info.amount
    transaction.transaction_id = callback_info.transaction_id
    transaction.payment_state = callback_info.payment_state
    order.save()
    return True


async def process_callback(
    provider_name: str,
    request: CallbackRequest,
    repository: OrderRepository,
    *,
    cart_number: Optional[str] = None,
    redis_client: Optional[Redis] = None,
    settings: Optional[Settings] = None,
) -> CallbackResponse:
    settings = settings or get_settings()
    provider, provider_settings = resolve_provider(provider_name, settings)
    bind_callback_context(provider_name, cart_number)

    async with provider:
        order = await _find_order(provider, provider_settings, request, repository, cart_number)
        result = await provider.process_callback(order, request, provider_settings)

    callback_info = result.callback_info
    if callback_info is None:
        logger.info("callback.unverified", cart_number=order.cart_number)
        return result.response

    key = f"{LOCK_PREFIX}{provider_name}:{callback_info.transaction_id}:{callback_info.payment_state.value}"
    if not await _acquire_idempotency_lock(redis_client, key, settings.callback_lock_ttl_seconds):
        logger.info("callback.idempotency.skipped", cart_number=order.cart_number)
        return result.response

    if apply_callback_info(order, callback_info):
        await repository.save(order)
    logger.info(
        "callback.processed",
        cart_number=order.cart_number,
        payment_state=callback_info.payment_state.value,
        transaction_id=callback_info.transaction_id,
    )
    return result.response


async def process_request(
    provider_name: str,
    request: CallbackRequest,
    repository: OrderRepository,
    *,
    cart_number: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> CallbackResponse:
    """Pass a browser or webhook request for the communication URL to the provider."""
    provider, provider_settings = resolve_provider(provider_name, settings)
    bind_callback_context(provider_name, cart_number)

    async with provider:
        order = await _find_order(provider, provider_settings, request, repository, cart_number)
        response = await provider.process_request(order, request, provider_settings)

    await repository.save(order)
    logger.info("request.processed", cart_number=order.cart_number, status_code=response.status_code)
    return response


async def _run_management_call(
    operation: str,
    provider_name: str,
    order: Order,
    repository: OrderRepository,
    settings: Optional[Settings],
) -> Optional[ApiInfo]:
    provider, provider_settings = resolve_provider(provider_name, settings)
    async with provider:
        api_info = await getattr(provider, operation)(order, provider_settings)

    if api_info is None:
        logger.warning(
            "payment.api_call.failed", operation=operation, provider=provider_name, order_number=order.order_number
        )
        return None

    order.transaction_information.transaction_id = api_info.transaction_id
    order.transaction_information.payment_state = api_info.payment_state
    await repository.save(order)
    logger.info(
        "payment.api_call.succeeded",
        operation=operation,
        provider=provider_name,
        order_number=order.order_number,
        payment_state=api_info.payment_state.value,
    )
    return api_info


async def get_status(
    provider_name: str,
    order: Order,
    repository: OrderRepository,
    settings: Optional[Settings] = None,
) -> Optional[ApiInfo]:
    return await _run_management_call("get_status", provider_name, order, repository, settings)


async def capture_payment(
    provider_name: str,
    order: Order,
    repository: OrderRepository,
    settings: Optional[Settings] = None,
) -> Optional[ApiInfo]:
    return await _run_management_call("capture_payment", provider_name, order, repository, settings)


async def refund_payment(
    provider_name: str,
    order: Order,
    repository: OrderRepository,
    settings: Optional[Settings] = None,
) -> Optional[ApiInfo]:
    return await _run_management_call("refund_payment", provider_name, order, repository, settings)


async def cancel_payment(
    provider_name: str,
    order: Order,
    repository: OrderRepository,
    settings: Optional[Settings] = None,
) -> Optional[ApiInfo]:
    return await _run_management_call("cancel_payment", provider_name, order, repository, settings)


async def process_stripe_webhook(
    request: CallbackRequest,
    repository: OrderRepository,
    *,
    provider_name: str = "stripe",
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Apply ``charge.refunded`` and ``charge.captured`` events to the order the charge belongs to.

    Raises:
        PaymentError: If the webhook secret is missing, the signature does not
            match or the payload can not be parsed
    """
    provider, provider_settings = resolve_provider(provider_name, settings)
    if not isinstance(provider, BaseStripeAdapter):
        raise ProviderNotFoundError(provider_name)

    webhook_secret = provider_settings.get(provider._key_name(provider_settings, "webhook_secret"), "")
    event = provider.construct_webhook_event(request.body, request.header("Stripe-Signature"), webhook_secret)

    event_type = stripe_value(event, "type", "")
    if event_type not in STRIPE_ORDER_UPDATE_EVENTS:
        logger.info("stripe.webhook.ignored", event_type=event_type)
        return {"status": "ignored", "event_type": event_type}

    charge = stripe_value(stripe_value(event, "data"), "object")
    reference = charge_order_reference(charge)
    order = await repository.get_by_cart_number(reference["cart_number"] or "")
    if order is None:
        logger.warning("stripe.webhook.order_not_found", event_type=event_type, order_id=reference["order_id"])
        return {"status": "order_not_found", "event_type": event_type}

    payment_state = provider.get_charge_state(charge)
    if order.transaction_information.payment_state != payment_state:
        order.transaction_information.payment_state = payment_state
        await repository.save(order)
        logger.info("stripe.webhook.order_updated", cart_number=order.cart_number, payment_state=payment_state.value)
        return {"status": "updated", "event_type": event_type}

    return {"status": "unchanged", "event_type": event_type}
