"""
Notifications — Slack webhook posts for upload and backfill events.

Notification failure never blocks the pipeline.
"""
import logging
import requests

from goalboard.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def _post(blocks):
    from goalboard.services.circuit_breaker import get_breaker
    get_breaker('slack').call(requests.post, SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)


def notify_upload_complete(result, submitted_by=''):
    """Post an ingestion summary to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Report upload processed"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Uploaded by:* {submitted_by or 'unknown'}"},
                    {"type": "mrkdwn", "text": f"*Rows:* {result.rows_received}"},
                    {"type": "mrkdwn", "text": f"*Processed:* {result.processed_count}"},
                    {"type": "mrkdwn", "text": f"*Changed:* {result.changed_count}"},
                    {"type": "mrkdwn", "text": f"*Actions sent:* {result.actions_submitted_count}"},
                    {"type": "mrkdwn", "text": f"*Errors:* {len(result.errors)}"},
                ],
            },
        ]
        if result.actions_failed_count:
            blocks.append({
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": f"{result.actions_failed_count} action logs were not delivered",
                }],
            })
        _post(blocks)
        logger.info("Upload %s notification sent", result.upload_id[:8])

    except Exception:
        logger.error("Failed to send notification for upload %s", result.upload_id[:8], exc_info=True)


def notify_migration_finished(job):
    """Post a backfill outcome (completed, failed or cancelled) to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        progress = job.progress or {}
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"Cycle backfill {job.status.upper()}"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Records:* {progress.get('total_records', 0)}"},
                    {"type": "mrkdwn", "text": f"*Migrated:* {progress.get('records_migrated', 0)}"},
                    {"type": "mrkdwn", "text": f"*Failed:* {progress.get('records_failed', 0)}"},
                    {"type": "mrkdwn", "text": f"*Batches:* {progress.get('current_batch', 0)}"
                                               f"/{progress.get('total_batches', 0)}"},
                ],
            },
        ]
        errors = progress.get('errors') or []
        if errors:
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Last error:* ```{str(errors[-1])[:500]}```"},
            })
        _post(blocks)
        logger.info("Migration %s notification sent", job.id[:8])

    except Exception:
        logger.error("Failed to send notification for migration %s", job.id[:8], exc_info=True)
