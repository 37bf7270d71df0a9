"""
Carrier webhook endpoints
Call start, session updates and call detail records
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from call_router.api.middleware.webhook_security import validate_carrier_webhook
from call_router.core.logging import get_logger
from call_router.services.call_routing_service import get_call_routing_service
from call_router.services.config_service import get_configuration_service
from call_router.services.cxml_service import HANGUP_DOCUMENT
from call_router.services.webhook_ingress import WebhookIngress

logger = get_logger(__name__)

router = APIRouter(prefix="/voice", tags=["voice"])

REQUEST_ID_HEADER = "x-cloudonix-request-id"

_webhook_ingress: Optional[WebhookIngress] = None


def get_webhook_ingress() -> WebhookIngress:
    """Get the WebhookIngress singleton instance"""
    global _webhook_ingress
    if _webhook_ingress is None:
        _webhook_ingress = WebhookIngress(get_configuration_service())
    return _webhook_ingress


def xml_response(document: str) -> Response:
    return Response(content=document, media_type="application/xml")


@router.post("/application/{application_id}")
async def call_start(
    application_id: str,
    request: Request,
    _: bool = Depends(validate_carrier_webhook)
):
    """
    Call-start webhook

    Answers with a cXML document. Malformed requests and unknown tenants get
    400/404; every other failure still produces a hangup document.
    """
    service = get_call_routing_service()
    try:
        await service.refresh_configuration()
    except Exception as e:
        logger.error(f"Configuration refresh failed, routing with the loaded snapshot: {e}")

    ingress = get_webhook_ingress()
    tenant, payload = await ingress.parse_call_start(request)
    event_id = request.headers.get(REQUEST_ID_HEADER) or payload.call_sid

    logger.info(
        f"Call start {payload.call_sid} for tenant {tenant.id}: "
        f"{payload.from_number} -> {payload.to_number} (application {application_id})"
    )

    try:
        document = await service.handle_call_start(tenant, payload, event_id, application_id=application_id)
    except Exception as e:
        logger.error(f"Call start {payload.call_sid} failed, hanging up: {e}", exc_info=True)
        document = HANGUP_DOCUMENT

    return xml_response(document)


@router.post("/session/update")
async def session_update(
    request: Request,
    _: bool = Depends(validate_carrier_webhook)
):
    """Session-update webhook"""
    ingress = get_webhook_ingress()
    tenant, update = await ingress.parse_session_update(request)
    target = ingress.map_session_status(update.status)

    logger.info(f"Session {update.token} status {update.status} -> {target.value}")

    service = get_call_routing_service()
    duplicate = await service.handle_session_update(tenant, update, target)
    return PlainTextResponse("Duplicate" if duplicate else "OK")


@router.post("/session/cdr")
async def session_cdr(
    request: Request,
    _: bool = Depends(validate_carrier_webhook)
):
    """Call detail record webhook"""
    ingress = get_webhook_ingress()
    tenant, cdr = await ingress.parse_cdr(request)
    disposition = ingress.map_disposition(cdr.disposition)

    logger.info(f"CDR {cdr.call_id} disposition {cdr.disposition} -> {disposition.value}")

    service = get_call_routing_service()
    duplicate = await service.handle_cdr(tenant, cdr, disposition, ingress.disposition_state(disposition))
    return PlainTextResponse("Duplicate" if duplicate else "OK")
