"""
Notification Sweep Job: drains the email alert queue.

Runs on a schedule (cron, Kubernetes CronJob or similar) to send plain
email alerts and the delayed regulatory/clinic notices queued when
incidents were recorded.

Typical cron schedule: */5 * * * * (every 5 minutes)
"""

import asyncio
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx

from ..core.config import Settings, get_settings
from ..core.database import build_engine, build_session_factory
from ..services.notification_dispatch import EmailSender, NotificationDispatch

logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """
    Raise an operator alert about the sweep itself.

    Always logged; also posted to ALERT_WEBHOOK_URL (PagerDuty, Opsgenie,
    custom) when configured.
    """
    settings = settings or get_settings()

    log_message = f"[SWEEP ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    if settings.alert_webhook_url:
        try:
            await _send_webhook_alert(
                settings.alert_webhook_url, title, message, severity, details, transport
            )
        except Exception as e:
            logger.error(f"Failed to send webhook alert: {e}")


async def _send_webhook_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "bi-incidents-sweep",
        "details": details or {},
    }

    async with httpx.AsyncClient(transport=transport, timeout=10) as client:
        response = await client.post(webhook_url, json=payload)
        response.raise_for_status()


# =============================================================================
# SWEEP
# =============================================================================


async def run_notification_sweep(
    database_url: str | None = None,
    email_sender: EmailSender | None = None,
    settings: Settings | None = None,
    batch_size: int | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """
    Main entry point for the sweep.

    1. Sends due plain email alerts
    2. Sends due scheduled incident notifications
    Each runs in its own transaction, so a crash in step 2 keeps step 1's
    progress.

    Returns:
        Job result summary
    """
    settings = settings or get_settings()
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting notification sweep at {start_time.isoformat()}")

    engine = build_engine(database_url or settings.database_url_async)
    session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "alerts_sent": 0,
        "alerts_failed": 0,
        "alerts_requeued": 0,
        "scheduled_sent": 0,
        "scheduled_failed": 0,
        "scheduled_requeued": 0,
        "errors": [],
    }

    try:
        # Step 1: plain email alerts
        async with session_factory() as session:
            async with session.begin():
                dispatch = NotificationDispatch(
                    session, settings, email_sender=email_sender,
                    webhook_transport=webhook_transport,
                )
                sweep = await dispatch.process_email_alerts(batch_size)
                results["alerts_sent"] = sweep.sent
                results["alerts_failed"] = sweep.failed
                results["alerts_requeued"] = sweep.requeued
                results["errors"].extend(sweep.errors)

        # Step 2: scheduled incident notifications (separate transaction)
        async with session_factory() as session:
            async with session.begin():
                dispatch = NotificationDispatch(
                    session, settings, email_sender=email_sender,
                    webhook_transport=webhook_transport,
                )
                sweep = await dispatch.process_scheduled_notifications(batch_size)
                results["scheduled_sent"] = sweep.sent
                results["scheduled_failed"] = sweep.failed
                results["scheduled_requeued"] = sweep.requeued
                results["errors"].extend(sweep.errors)

    except Exception as e:
        error_msg = f"Notification sweep failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await send_alert(
            title="Notification Sweep Failed",
            message="The notification sweep crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
                "alerts_sent_before_crash": results["alerts_sent"],
            },
            settings=settings,
            transport=webhook_transport,
        )
        raise

    finally:
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Notification sweep completed in {results['duration_seconds']:.2f}s: "
        f"{results['alerts_sent']} alerts sent, "
        f"{results['scheduled_sent']} scheduled notifications sent"
    )

    failed = results["alerts_failed"] + results["scheduled_failed"]
    if failed > 0:
        await send_alert(
            title="Notification Sweep Completed with Failures",
            message=f"{failed} queued notification(s) failed permanently.",
            severity="warning",
            details={
                "alerts_failed": results["alerts_failed"],
                "scheduled_failed": results["scheduled_failed"],
                "errors": results["errors"][:5],
            },
            settings=settings,
            transport=webhook_transport,
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the notification sweep."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Send due BI incident notifications")
    parser.add_argument(
        "--database-url",
        default=settings.database_url_async,
        help="Database connection string",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.sweep_batch_size,
        help="Maximum queue entries to process per pass",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(run_notification_sweep(
            database_url=args.database_url,
            settings=settings,
            batch_size=args.batch_size,
        ))
        logger.info(f"Job completed: {results}")
    except Exception as e:
        logger.error(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
