import os
from typing import Any, Dict, Mapping, Optional

import structlog
from fastapi import HTTPException
from pymongo.database import Database
from svix.webhooks import Webhook, WebhookVerificationError

from database import utcnow
from schemas import Role

logger = structlog.get_logger(__name__)

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


def verify_clerk_event(body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
    """Check the Svix signature on a Clerk webhook and return the parsed event."""
    svix_headers = {name: headers.get(name) for name in SVIX_HEADERS}
    if not all(svix_headers.values()):
        raise HTTPException(status_code=400, detail="Missing svix headers")
    secret = os.getenv("CLERK_WEBHOOK_SECRET")
    if not secret:
        raise RuntimeError("CLERK_WEBHOOK_SECRET is not set")
    try:
        return Webhook(secret).verify(body, svix_headers)
    except WebhookVerificationError as exc:
        logger.warning("webhook_verification_failed", error=str(exc))
        raise HTTPException(status_code=400, detail="Invalid signature")


def _primary_email(data: Dict[str, Any]) -> Optional[str]:
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for address in addresses:
        if address.get("id") == primary_id:
            return address.get("email_address")
    return addresses[0].get("email_address") if addresses else None


def sync_user(db: Database, data: Dict[str, Any]) -> None:
    clerk_id = data.get("id")
    if not clerk_id:
        raise HTTPException(status_code=400, detail="Missing user id")
    metadata = data.get("unsafe_metadata") or {}
    fields = {
        "email": _primary_email(data),
        "first_name": data.get("first_name"),
        "last_name": data.get("last_name"),
        "image_url": data.get("image_url"),
        "role": metadata.get("role"),
        "onboarding_complete": metadata.get("onboarding_complete", metadata.get("onboardingComplete")),
    }
    updates = {k: v for k, v in fields.items() if v is not None}
    if updates.get("role") and updates["role"] not in {r.value for r in Role}:
        updates.pop("role")
    updates["updated_at"] = utcnow()

    defaults = {"clerk_id": clerk_id, "created_at": utcnow()}
    if "role" not in updates:
        defaults["role"] = Role.customer.value
    if "onboarding_complete" not in updates:
        defaults["onboarding_complete"] = False

    db["user"].update_one(
        {"clerk_id": clerk_id},
        {"$set": updates, "$setOnInsert": defaults},
        upsert=True,
    )


def handle_clerk_event(db: Database, event: Dict[str, Any]) -> None:
    event_type = event.get("type")
    data = event.get("data") or {}
    if event_type in ("user.created", "user.updated"):
        sync_user(db, data)
        logger.info("webhook_user_synced", event=event_type, clerk_id=data.get("id"))
    elif event_type == "user.deleted":
        db["user"].delete_one({"clerk_id": data.get("id")})
        logger.info("webhook_user_deleted", clerk_id=data.get("id"))
    else:
        logger.info("webhook_ignored", event=event_type)
