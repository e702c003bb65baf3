from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from fanbilling.core import aws
from fanbilling.core.settings import S
from fanbilling.core.tables import T
from fanbilling.core.time import now_ts
from fanbilling.services.ledger import META, ddb_get_item, new_id

logger = logging.getLogger(__name__)


def pk_fan(fan_id: str) -> str:
    return f"FAN#{fan_id}"


def pk_notif(user_id: str) -> str:
    return f"NOTIF#{user_id}"


def billing_notifications_enabled(fan_id: str) -> bool:
    fan = ddb_get_item(pk_fan(fan_id), META) or {}
    prefs = fan.get("notification_preferences") or {}
    return prefs.get("billing") is not False


def send_email(to_email: str, subject: str, body_text: str) -> bool:
    if aws.ses is None or not S.ses_from_email or not to_email:
        return False
    try:
        aws.ses.send_email(
            Source=S.ses_from_email,
            Destination={"ToAddresses": [to_email]},
            Message={"Subject": {"Data": subject[:120]}, "Body": {"Text": {"Data": body_text[:8000]}}},
        )
    except ClientError as exc:
        logger.warning("SES send failed: %s", exc, extra={"to_email": to_email})
        return False
    return True


def put_notification(*, recipient_user_id: str, notif_type: str, payload: Dict[str, Any]) -> str:
    notif_id = new_id("ntf")
    created_at = now_ts()
    T.notifications.put_item(Item={
        "pk": pk_notif(recipient_user_id),
        "sk": f"{created_at}#NOTIF#{notif_id}",
        "entity": "notification",
        "notif_id": notif_id,
        "recipient_user_id": recipient_user_id,
        "type": notif_type,
        "payload": payload,
        "created_at": created_at,
        "read": False,
    })
    return notif_id


def notify_fan(
    fan_id: str,
    notif_type: str,
    *,
    subject: str,
    body_text: str,
    payload: Dict[str, Any],
    email: Optional[str] = None,
) -> bool:
    """Deliver a billing notification. Returns False when the fan has opted out of billing mail."""
    if not billing_notifications_enabled(fan_id):
        return False
    put_notification(recipient_user_id=fan_id, notif_type=notif_type, payload=payload)
    if email:
        send_email(email, subject, body_text)
    return True
