"""
Run summaries for scheduled jobs.

Always logged; also posted to Slack and/or Discord when their webhook URLs
are configured. Webhook failures are logged and never fail the job.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..common.http_client import create_api_client
from ..config.settings import settings

logger = logging.getLogger(__name__)

# Counters shown in a summary, in display order
SUMMARY_FIELDS = (
    "claimed",
    "dispensaries_processed",
    "processed",
    "skipped",
    "failed",
    "deals_inserted",
)
MAX_ERRORS_SHOWN = 5
WEBHOOK_TIMEOUT = 10.0


async def send_run_summary(
    job_name: str,
    result: Optional[Dict[str, Any]],
    duration_seconds: float,
    error: Optional[str] = None,
) -> None:
    """
    Log a run summary and forward it to any configured webhooks.

    Args:
        job_name: Human-readable job name ("Zone refresh", "Deal ingestion")
        result: ZoneBatchResult.to_dict() or DispatchResult.to_dict()
        duration_seconds: Total run duration
        error: Set when the run never produced a result (crash, timeout)
    """
    if error or result is None:
        text = build_error_message(job_name, error or "no result", duration_seconds)["text"]
        logger.error(text)
    else:
        text = build_success_message(job_name, result, duration_seconds)["text"]
        logger.info(text)

    if settings.slack_webhook_url:
        await post_webhook("Slack", settings.slack_webhook_url, {"text": text})
    if settings.discord_webhook_url:
        await post_webhook("Discord", settings.discord_webhook_url, {"content": text})


def build_success_message(job_name: str, result: Dict[str, Any], duration: float) -> dict:
    errors = result.get("errors") or []
    clean = not result.get("failed") and not errors
    lines = [
        f"{':white_check_mark:' if clean else ':warning:'} *DealScout {job_name} Complete*",
        "",
    ]
    lines.extend(
        f"- {name.replace('_', ' ').capitalize()}: {result[name]}"
        for name in SUMMARY_FIELDS
        if name in result
    )
    lines.append(f"- Duration: {duration:.1f}s")
    if errors:
        lines.append(f"*Persistence errors ({len(errors)}):*")
        lines.extend(f"- {e}" for e in errors[:MAX_ERRORS_SHOWN])
    return {"text": "\n".join(lines)}


def build_error_message(job_name: str, error: str, duration: float) -> dict:
    return {
        "text": (
            f":x: *DealScout {job_name} FAILED*\n"
            f"*Error:* {error}\n"
            f"*Duration before failure:* {duration:.1f}s"
        )
    }


async def post_webhook(channel: str, url: str, payload: dict) -> bool:
    """POST a JSON payload. Returns True on a 2xx response."""
    try:
        async with create_api_client(WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Failed to send {channel} notification: {e}")
        return False
    logger.info(f"{channel} notification sent")
    return True
