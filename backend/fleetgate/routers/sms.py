from fastapi import APIRouter, Request

from fleetgate.schemas import SmsInboundIn

router = APIRouter(prefix="/sms")


@router.post("/inbound")
async def inbound_sms(payload: SmsInboundIn, request: Request):
    """Webhook for replies delivered by the SMS gateway."""
    result = await request.app.state.gateway.commands.handle_inbound(payload.sender, payload.message)
    if result is None:
        return {"status": "ignored"}
    return result.as_dict()
