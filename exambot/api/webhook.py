import logging
import secrets
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from exambot.api.deps import Services, get_services
from exambot.core.errors import StoreUnavailable, UnsupportedEvent
from exambot.transport.telegram import TelegramError, parse_update

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/{token}")
async def telegram_webhook(
    token: str,
    update: Dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
):
    """Receive one Telegram update.

    Answers 503 when the session store or catalog is down so Telegram
    redelivers the update; every other outcome is acknowledged with 200.
    """
    expected = services.settings.TELEGRAM_BOT_TOKEN.get_secret_value()
    if not expected or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    try:
        event = parse_update(update)
    except UnsupportedEvent as exc:
        logger.info(f"Ignoring update {update.get('update_id')}: {exc}")
        return {"ok": True}
    if event is None:
        return {"ok": True}

    try:
        await services.router.dispatch(event)
    except StoreUnavailable as exc:
        logger.error(f"Store unavailable while handling update {update.get('update_id')}: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store unavailable")
    except TelegramError as exc:
        # Notifications are best effort; the transition already happened
        logger.warning(f"Telegram call failed while handling update {update.get('update_id')}: {exc}")
    return {"ok": True}
