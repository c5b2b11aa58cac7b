"""
Activity log: best-effort audit trail plus its CSV export.
"""

import csv
import io
import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from .models import ActivityLog

logger = logging.getLogger(__name__)

CSV_HEADERS = ['Date', 'User', 'Action', 'Details']


def log_activity(action, details, user_email, entity_type, entity_id=None):
    """Append an ActivityLog row. Never raises.

    The insert runs in its own savepoint so a failed audit write cannot break
    the caller's transaction. Failures go to the ``demokit.audit`` logger.
    """
    try:
        with transaction.atomic():
            return ActivityLog.objects.create(
                action=action,
                details=details,
                user_email=user_email or '',
                entity_type=entity_type,
                entity_id='' if entity_id is None else str(entity_id),
            )
    except DatabaseError:
        logger.exception('Could not write activity log entry %r (%s)', action, details)
        return None


def export_activity_csv(logs):
    """Render activity log rows as CSV text (Date, User, Action, Details)."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for log in logs:
        writer.writerow([
            timezone.localtime(log.created_date).strftime('%Y-%m-%d %H:%M:%S'),
            log.user_email or 'System',
            log.action,
            log.details or '',
        ])
    return buf.getvalue()
