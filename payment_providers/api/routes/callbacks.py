from typing import Dict, List
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse, Response
from redis.asyncio import Redis

from payment_providers.api.dependencies.redis import get_redis_client
from payment_providers.core.logging import get_logger
from payment_providers.integrations.payment_gateways import (
    CallbackRequest,
    CallbackResponse,
    PaymentError,
    PaymentProviderFactory,
)
from payment_providers.schemas.payment import ProviderCapabilities, ProviderRead, StripeWebhookResult
from payment_providers.services.order_service import OrderRepository, get_order_repository
from payment_providers.services.payment_service import (
    OrderNotFoundError,
    ProviderNotFoundError,
    process_callback,
    process_request,
    process_stripe_webhook,
    resolve_provider,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payment-providers", tags=["payment-providers"])

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Query parameters the host adds to callback URLs, routing only
ROUTE_QUERY_PARAMETERS = ("cart_number",)


async def build_callback_request(request: Request) -> CallbackRequest:
    body = await request.body()
    form: Dict[str, str] = {}
    if request.headers.get("content-type", "").startswith(FORM_CONTENT_TYPE):
        form = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))

    return CallbackRequest(
        method=request.method,
        url=str(request.url),
        query={key: value for key, value in request.query_params.items() if key not in ROUTE_QUERY_PARAMETERS},
        form=form,
        headers=dict(request.headers),
        body=body,
        client_ip=request.client.host if request.client else None,
    )


def to_http_response(response: CallbackResponse) -> Response:
    if response.redirect_url:
        return RedirectResponse(url=response.redirect_url, status_code=response.status_code)
    return Response(
        content=response.body,
        status_code=response.status_code,
        headers=response.headers,
        media_type=response.content_type,
    )


@router.get("", response_model=List[ProviderRead])
async def list_providers_endpoint() -> List[ProviderRead]:
    providers = []
    for name in sorted(PaymentProviderFactory.get_supported_providers()):
        provider, _ = resolve_provider(name)
        providers.append(
            ProviderRead(
                name=name,
                display_name=provider.display_name,
                documentation_link=provider.documentation_link,
                capabilities=ProviderCapabilities(**provider.capabilities()),
                default_settings=provider.default_settings,
            )
        )
    return providers


@router.post("/stripe/webhook", response_model=StripeWebhookResult)
async def stripe_webhook_endpoint(
    request: Request,
    repository: OrderRepository = Depends(get_order_repository),
) -> StripeWebhookResult:
    callback_request = await build_callback_request(request)
    try:
        result = await process_stripe_webhook(callback_request, repository)
    except PaymentError as exc:
        logger.warning("stripe.webhook.rejected", error_code=exc.error_code)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.error_message) from exc
    return StripeWebhookResult(**result)


@router.api_route("/{provider_name}/callback", methods=["GET", "POST"])
async def callback_endpoint(
    provider_name: str,
    request: Request,
    cart_number: str | None = None,
    repository: OrderRepository = Depends(get_order_repository),
    redis_client: Redis | None = Depends(get_redis_client),
) -> Response:
    callback_request = await build_callback_request(request)
    try:
        response = await process_callback(
            provider_name,
            callback_request,
            repository,
            cart_number=cart_number,
            redis_client=redis_client,
        )
    except ProviderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment provider not found") from exc
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    return to_http_response(response)


@router.api_route("/{provider_name}/request", methods=["GET", "POST"])
async def request_endpoint(
    provider_name: str,
    request: Request,
    cart_number: str | None = None,
    repository: OrderRepository = Depends(get_order_repository),
) -> Response:
    callback_request = await build_callback_request(request)
    try:
        response = await process_request(provider_name, callback_request, repository, cart_number=cart_number)
    except ProviderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment provider not found") from exc
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    return to_http_response(response)
