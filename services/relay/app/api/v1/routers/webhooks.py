from fastapi import APIRouter, Depends, Response

from ....context import RelayContext
from ....core.errors import NotFoundError
from ....core.logging import get_logger
from ....schemas.webhooks import DeliveryOut, WebhookCreate, WebhookOut
from ...deps import get_context, require_api_key

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post(
    "", response_model=WebhookOut, status_code=201, dependencies=[Depends(require_api_key)]
)
def create_webhook(
    payload: WebhookCreate, context: RelayContext = Depends(get_context)
) -> WebhookOut:
    webhook = context.repository.create_webhook(
        url=payload.url, event_types=payload.event_types, secret=payload.secret
    )
    logger.info("webhook.registered", webhook_id=webhook.id, event_types=webhook.event_types)
    return WebhookOut.model_validate(webhook)


@router.get("", response_model=list[WebhookOut])
def list_webhooks(context: RelayContext = Depends(get_context)) -> list[WebhookOut]:
    return [WebhookOut.model_validate(w) for w in context.repository.list_webhooks()]


@router.delete("/{webhook_id}", status_code=204, dependencies=[Depends(require_api_key)])
def delete_webhook(webhook_id: int, context: RelayContext = Depends(get_context)) -> Response:
    if not context.repository.delete_webhook(webhook_id):
        raise NotFoundError("webhook not found")
    logger.info("webhook.deleted", webhook_id=webhook_id)
    return Response(status_code=204)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryOut])
def list_deliveries(
    webhook_id: int, context: RelayContext = Depends(get_context)
) -> list[DeliveryOut]:
    if context.repository.get_webhook(webhook_id) is None:
        raise NotFoundError("webhook not found")
    deliveries = context.repository.list_deliveries(webhook_id=webhook_id)
    return [DeliveryOut.model_validate(d) for d in deliveries]
