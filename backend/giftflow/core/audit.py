"""Audit logging for sensitive social operations."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("giftflow.audit")


class AuditAction(str, Enum):
    """Audit action types."""
    # Authentication
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    REGISTER = "register"

    # Social graph
    FRIEND_REMOVE = "friend_remove"
    USER_BLOCK = "user_block"
    USER_UNBLOCK = "user_unblock"
    SETTINGS_UPDATE = "settings_update"

    # Gifts
    GIFT_DELETE = "gift_delete"
    DONATION_CREATE = "donation_create"
    DONATION_WITHDRAW = "donation_withdraw"

    # Events
    EVENT_DELETE = "event_delete"
    EVENT_MEMBER_REMOVE = "event_member_remove"


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Args:
        action: The action being performed
        request: FastAPI request object (for IP, user agent)
        user_id: Telegram id of the user performing the action
        details: Additional details about the action
        success: Whether the action was successful
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }

    if user_id is not None:
        event["user_id"] = str(user_id)

    if request:
        client_host = request.client.host if request.client else None
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_host = forwarded.split(",")[0].strip()

        event["ip"] = client_host
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = request.headers.get("X-Request-Id", "")

    if details:
        sanitized = {}
        for key, value in details.items():
            if key in ("init_data", "token", "secret", "authorization"):
                sanitized[key] = "***REDACTED***"
            else:
                sanitized[key] = value
        event["details"] = sanitized

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)


def audit_login(request: Request, telegram_id: int, created: bool) -> None:
    audit_log(
        AuditAction.REGISTER if created else AuditAction.LOGIN,
        request=request,
        user_id=telegram_id,
    )


def audit_login_failed(request: Request, reason: str) -> None:
    audit_log(
        AuditAction.LOGIN_FAILED,
        request=request,
        details={"reason": reason},
        success=False,
    )


def audit_user_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    target_id: int,
) -> None:
    """Log an action one user takes against another."""
    audit_log(action, request=request, user_id=user_id, details={"target_id": target_id})


def audit_gift_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    gift_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    event_details: dict[str, Any] = {"gift_id": gift_id}
    if details:
        event_details.update(details)
    audit_log(action, request=request, user_id=user_id, details=event_details)


def audit_event_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    event_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    event_details: dict[str, Any] = {"event_id": event_id}
    if details:
        event_details.update(details)
    audit_log(action, request=request, user_id=user_id, details=event_details)
