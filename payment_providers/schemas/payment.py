from pydantic import BaseModel, ConfigDict


class ProviderCapabilities(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    supports_retrieval_of_payment_status: bool
    supports_capturing_of_payment: bool
    supports_refund_of_payment: bool
    supports_cancellation_of_payment: bool
    finalize_at_continue_url: bool
    allows_callback_without_order_id: bool


class ProviderRead(BaseModel):
    name: str
    display_name: str
    documentation_link: str
    capabilities: ProviderCapabilities
    default_settings: dict[str, str]


class StripeWebhookResult(BaseModel):
    status: str
    event_type: str
