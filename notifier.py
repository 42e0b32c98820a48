"""
notifier.py — Download notifications for share owners.

The notification service only ever learns that a download happened: share
id, time, requester IP and byte count. Keys, passwords and file names never
leave this process. Delivery is best effort; a failed webhook never fails a
download.
"""

import os
import logging
from datetime import datetime
from typing import Optional

import httpx
from dotenv import load_dotenv

from database import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "2.0"))

EVENT_DOWNLOAD = "file_downloaded"


def build_download_event(share_id: str, ip: Optional[str], nbytes: int,
                         timestamp: Optional[datetime] = None) -> dict:
    return {
        "event": EVENT_DOWNLOAD,
        "share_id": share_id,
        "timestamp": (timestamp or utcnow()).isoformat(),
        "ip": ip,
        "bytes": nbytes,
    }


def notify_download(
    share_id: str,
    ip: Optional[str],
    nbytes: int,
    client: Optional[httpx.Client] = None,
    url: Optional[str] = None,
) -> bool:
    """POST a download event to the webhook. Returns True when delivered."""
    url = url if url is not None else NOTIFY_WEBHOOK_URL
    if not url:
        return False

    event = build_download_event(share_id, ip, nbytes)
    try:
        if client is not None:
            response = client.post(url, json=event, timeout=NOTIFY_TIMEOUT)
        else:
            response = httpx.post(url, json=event, timeout=NOTIFY_TIMEOUT)
        response.raise_for_status()
        logger.info(f"Download notification sent for share {share_id}")
        return True

    except httpx.TimeoutException:
        logger.warning(f"Notification webhook timeout after {NOTIFY_TIMEOUT}s")
    except httpx.HTTPStatusError as e:
        logger.warning(f"Notification webhook rejected event: HTTP {e.response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Notification webhook unreachable: {type(e).__name__}")
    return False
