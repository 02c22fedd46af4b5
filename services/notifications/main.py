import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from shared import (
    RedisStreamClient, create_health_router, configure_logging, metrics,
    STREAM_CLAIM_VERIFIED, STREAM_CLAIM_REJECTED, STREAM_AUTO_MISS_APPLIED,
    setup_telemetry, instrument_fastapi
)

logger = configure_logging("notifications", os.getenv("LOG_LEVEL", "INFO"))
setup_telemetry("notifications")

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
EMAIL_GATEWAY_URL = os.getenv("EMAIL_GATEWAY_URL", "")

redis_client = RedisStreamClient(REDIS_URL)
http_client: Optional[httpx.AsyncClient] = None

background_tasks = set()

TEMPLATES = {
    "claim_verified": "Your win claim for entry {entry_id} has been verified.",
    "claim_rejected": "Your win claim for entry {entry_id} was not approved.",
    "auto_miss": "The attempt window for entry {entry_id} closed without a result.",
    "claim_deadline": "Your win claim for entry {entry_id} was not reviewed before its deadline and has been closed.",
}


async def send_email(notification_type: str, payload: dict) -> str:
    """Post one notification to the email gateway. Returns sent, logged or failed."""
    entry_id = payload.get("entry_id")
    message = TEMPLATES[notification_type].format(entry_id=entry_id)

    if not EMAIL_GATEWAY_URL or http_client is None:
        logger.info(
            f"EMAIL (no gateway): {message}",
            extra={"entry_id": entry_id, "notification_type": notification_type}
        )
        result = "logged"
    else:
        try:
            response = await http_client.post(
                f"{EMAIL_GATEWAY_URL}/send",
                json={
                    "notification_type": notification_type,
                    "entry_id": entry_id,
                    "verification_id": payload.get("verification_id"),
                    "message": message,
                },
                timeout=10.0
            )
            response.raise_for_status()
            result = "sent"
        except httpx.HTTPError as e:
            logger.error(
                f"Email gateway call failed: {e}",
                extra={"entry_id": entry_id, "notification_type": notification_type}
            )
            result = "failed"

    metrics.NOTIFICATIONS_SENT.labels(type=notification_type, result=result).inc()
    return result


async def handle_claim_verified(payload: dict):
    if not payload.get("entry_id"):
        logger.warning("Received claim verified message with missing entry_id")
        return
    await send_email("claim_verified", payload)


async def handle_claim_rejected(payload: dict):
    if not payload.get("entry_id"):
        logger.warning("Received claim rejected message with missing entry_id")
        return
    await send_email("claim_rejected", payload)


async def handle_auto_miss(payload: dict):
    if not payload.get("entry_id"):
        logger.warning("Received auto-miss message with missing entry_id")
        return
    if payload.get("reason") == "verification_deadline_elapsed":
        await send_email("claim_deadline", payload)
    else:
        await send_email("auto_miss", payload)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global http_client

    http_client = httpx.AsyncClient()
    await redis_client.connect()

    for stream, handler in (
        (STREAM_CLAIM_VERIFIED, handle_claim_verified),
        (STREAM_CLAIM_REJECTED, handle_claim_rejected),
        (STREAM_AUTO_MISS_APPLIED, handle_auto_miss),
    ):
        task = asyncio.create_task(
            redis_client.consume(stream, "notification-group", "notification-1", handler)
        )
        background_tasks.add(task)

    logger.info("Notification service started")
    yield

    for task in background_tasks:
        task.cancel()
    await redis_client.close()
    await http_client.aclose()


app = FastAPI(title="Lifecycle Notification Service", lifespan=lifespan)
instrument_fastapi(app)

app.include_router(create_health_router(service_name="notifications"))


@app.get("/")
async def root():
    return {
        "service": "notifications",
        "status": "running",
        "gateway_configured": bool(EMAIL_GATEWAY_URL)
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
