"""
Audit trail and operator notifications.

One audit row is written per state transition (connect, disconnect, refresh,
publish attempt, publish result, retry). Notifications are written only when
someone has to act: an account needs reconnecting or a job gave up.
"""

import json
import logging
import time
import uuid

from socialpub.models import get_social_db

logger = logging.getLogger(__name__)


def _dump(values):
    if values is None:
        return None
    return json.dumps(values, default=str, sort_keys=True)


def record_event(db_path, action, resource_type, resource_id=None, organization_id=None,
                 user_id=None, old_values=None, new_values=None, conn=None):
    """Append an audit row.

    When ``conn`` is given the row joins the caller's transaction and the
    caller commits; otherwise a connection is opened and committed here.
    """
    params = (
        str(uuid.uuid4()), organization_id, user_id, action, resource_type, resource_id,
        _dump(old_values), _dump(new_values), time.time(),
    )
    sql = ("INSERT INTO audit_logs (id, organization_id, user_id, action, resource_type, "
           "resource_id, old_values, new_values, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)")
    logger.debug(f"audit {action} {resource_type}:{resource_id}")
    if conn is not None:
        conn.execute(sql, params)
        return
    own = get_social_db(db_path)
    try:
        own.execute(sql, params)
        own.commit()
    finally:
        own.close()


def notify(db_path, organization_id, type, title, message=None, resource_type=None,
           resource_id=None):
    """Create an unread notification for the organization."""
    conn = get_social_db(db_path)
    try:
        conn.execute(
            "INSERT INTO notifications (id, organization_id, type, title, message, "
            "resource_type, resource_id, is_read, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)",
            (str(uuid.uuid4()), organization_id, type, title, message,
             resource_type, resource_id, time.time())
        )
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Notification for org {organization_id}: {title}")


def list_events(db_path, organization_id, resource_type=None, resource_id=None, limit=100):
    conn = get_social_db(db_path)
    try:
        sql = "SELECT * FROM audit_logs WHERE organization_id = ?"
        params = [organization_id]
        if resource_type:
            sql += " AND resource_type = ?"
            params.append(resource_type)
        if resource_id:
            sql += " AND resource_id = ?"
            params.append(resource_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = conn.execute(sql, params).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event['old_values'] = json.loads(event['old_values']) if event['old_values'] else None
            event['new_values'] = json.loads(event['new_values']) if event['new_values'] else None
            events.append(event)
        return events
    finally:
        conn.close()


def list_notifications(db_path, organization_id, unread_only=False):
    conn = get_social_db(db_path)
    try:
        sql = "SELECT * FROM notifications WHERE organization_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        rows = conn.execute(sql + " ORDER BY created_at DESC", (organization_id,)).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()
