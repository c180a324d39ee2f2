"""
Innovation Workflow Platform
Notification blueprint.

Endpoints:
    GET   /api/v1/notifications?recipient=&unread_only=   — inbox, newest first
    GET   /api/v1/notifications/unread-count?recipient=
    POST  /api/v1/notifications/<id>/read
    POST  /api/v1/notifications/read-all                   — body: {recipient}

``recipient`` defaults to the X-User caller. The inbox includes broadcasts
and notifications addressed to any approver role the recipient holds.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.models.notification import Notification
from app.services.notification import NotificationService
from app.utils.errors import E, api_error
from app.utils.helpers import current_user, db_commit_or_error, get_or_404, parse_bool

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")


def _recipient():
    return request.args.get("recipient") or current_user() or "all"


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    try:
        limit = min(int(request.args.get("limit", 50)), 200)
        offset = max(int(request.args.get("offset", 0)), 0)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "limit and offset must be integers")

    items, total = NotificationService.list_for_recipient(
        recipient=_recipient(),
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(_recipient())})


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    notif, err = get_or_404(Notification, nid, label="Notification")
    if err:
        return err
    NotificationService.mark_read(notif.id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    data = request.get_json(silent=True) or {}
    recipient = data.get("recipient") or current_user() or "all"
    count = NotificationService.mark_all_read(recipient)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"marked_read": count})
