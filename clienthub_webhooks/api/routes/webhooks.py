import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from starlette.responses import JSONResponse
from typing import List
from uuid import UUID

from clienthub_webhooks.api.dependencies import get_async_db, get_outbound_client
from clienthub_webhooks.models.delivery_log import DeliveryLog
from clienthub_webhooks.models.destination import WebhookDestination
from clienthub_webhooks.api.schemas import (
    DestinationCreate,
    DestinationOut,
    DestinationUpdate,
    SecretOut,
    WebhookTestRequest,
)
from clienthub_webhooks.services.signing import generate_secret
from clienthub_webhooks.services.webhook_tester import (
    render_attempt,
    send_destination_test,
    send_test_delivery,
)

router = APIRouter()


async def _get_destination_or_404(db: AsyncSession, webhook_id: UUID) -> WebhookDestination:
    destination = await db.get(WebhookDestination, webhook_id)
    if not destination:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        )
    return destination


@router.post(
    "/",
    response_model=DestinationOut,
    status_code=status.HTTP_201_CREATED,
)
async def create_webhook(
    webhook_in: DestinationCreate,
    db: AsyncSession = Depends(get_async_db),
):
    data = webhook_in.dict()

    # Convert AnyHttpUrl to string before creating SQLAlchemy model
    data["url"] = str(data["url"])
    data["secret_key"] = data.get("secret_key") or generate_secret()

    destination = WebhookDestination(**data, enabled=True, failure_count=0)
    db.add(destination)
    await db.commit()
    await db.refresh(destination)
    return destination


@router.get("/", response_model=List[DestinationOut])
async def list_webhooks(
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(get_async_db),
):
    result = await db.execute(
        select(WebhookDestination)
        .order_by(WebhookDestination.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()


@router.post(
    "/test",
    summary="Send one uninstrumented test delivery to an arbitrary HTTPS URL",
)
async def test_webhook_url(
    request_in: WebhookTestRequest,
    client: httpx.AsyncClient = Depends(get_outbound_client),
):
    if not request_in.url.startswith("https://"):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "error": "Only HTTPS URLs are allowed for webhooks",
            },
        )

    attempt = await send_test_delivery(
        request_in.url,
        secret=request_in.secret,
        payload=request_in.payload,
        custom_headers=request_in.custom_headers,
        http_method=request_in.http_method,
        client=client,
    )
    return render_attempt(attempt)


@router.get("/{webhook_id}", response_model=DestinationOut)
async def read_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
):
    return await _get_destination_or_404(db, webhook_id)


@router.patch("/{webhook_id}", response_model=DestinationOut)
async def update_webhook(
    webhook_id: UUID,
    webhook_in: DestinationUpdate,
    db: AsyncSession = Depends(get_async_db),
):
    destination = await _get_destination_or_404(db, webhook_id)

    # Get update data, excluding unset fields
    update_data = webhook_in.dict(exclude_unset=True)

    for field, value in update_data.items():
        if value is None:
            continue
        if field == "url":
            setattr(destination, field, str(value))
        else:
            setattr(destination, field, value)

    await db.commit()
    await db.refresh(destination)
    return destination


@router.delete(
    "/{webhook_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
):
    destination = await _get_destination_or_404(db, webhook_id)
    await db.delete(destination)
    await db.commit()
    return


@router.post("/{webhook_id}/regenerate-secret", response_model=SecretOut)
async def regenerate_webhook_secret(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
):
    destination = await _get_destination_or_404(db, webhook_id)
    destination.secret_key = generate_secret()
    await db.commit()
    return {"id": destination.id, "secret_key": destination.secret_key}


@router.post(
    "/{webhook_id}/reset-failures",
    response_model=DestinationOut,
    summary="Close the circuit breaker of a destination",
)
async def reset_webhook_failures(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
):
    destination = await _get_destination_or_404(db, webhook_id)
    destination.failure_count = 0
    await db.commit()
    await db.refresh(destination)
    return destination


@router.post(
    "/{webhook_id}/test",
    summary="Send a signed test event to a configured webhook and log it",
)
async def test_configured_webhook(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
    client: httpx.AsyncClient = Depends(get_outbound_client),
):
    destination = await _get_destination_or_404(db, webhook_id)
    payload, attempt = await send_destination_test(destination, client)

    db.add(
        DeliveryLog(
            webhook_id=destination.id,
            event_type=payload["event_type"],
            event_id=payload["event_id"],
            payload=payload,
            status_code=attempt.status_code,
            response_body=attempt.truncated_body,
            response_headers=attempt.headers or None,
            attempt_number=1,
            error_message=attempt.describe_failure(),
            duration_ms=attempt.duration_ms,
            success=attempt.success,
        )
    )
    await db.commit()

    result = render_attempt(attempt)
    result["event_id"] = payload["event_id"]
    return result
