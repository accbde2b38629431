from __future__ import annotations

import functools

import structlog
from flask import Blueprint, g, jsonify, request

from app.extensions import get_services
from app.models.archive import ArchivalRule
from app.services.exceptions import ArchiveError
from app.services.rules import RuleValidationError, migrate_legacy_mappings
from app.utils.correlation import (
    CORRELATION_HEADER,
    clear_correlation_context,
    ensure_correlation_id,
)

bp = Blueprint("api", __name__, url_prefix="/api/v1")
logger = structlog.get_logger(__name__)

USER_HEADER = "X-User-ID"


def _json_error(message: str, status: int):
    return jsonify({"error": message}), status


@bp.before_request
def _bind_request():
    g.correlation_id = ensure_correlation_id(request.headers.get(CORRELATION_HEADER))
    g.user_id = (request.headers.get(USER_HEADER) or "").strip() or None


@bp.after_request
def _tag_response(response):
    if g.get("correlation_id"):
        response.headers[CORRELATION_HEADER] = g.correlation_id
    return response


@bp.teardown_request
def _clear_request(_exc):
    clear_correlation_context()


def authorization_required(view):
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        if not g.get("user_id"):
            return _json_error("Not authorized", 401)
        return view(*args, **kwargs)

    return wrapper


def admin_required(view):
    @functools.wraps(view)
    @authorization_required
    def wrapper(*args, **kwargs):
        if g.user_id not in get_services().settings.admin_user_ids:
            logger.warning("api.admin_denied", user_id=g.user_id, path=request.path)
            return _json_error("Insufficient permissions", 403)
        return view(*args, **kwargs)

    return wrapper


@bp.route("/config", methods=["GET"])
@admin_required
def get_config():
    snapshot = get_services().config_store.current()
    return jsonify(snapshot.to_dict())


@bp.route("/config", methods=["POST"])
@admin_required
def update_config():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _json_error("Invalid request body", 400)

    raw_rules = payload.get("archivalRules") or []
    if not isinstance(raw_rules, list) or not all(
        isinstance(item, dict) for item in raw_rules
    ):
        return _json_error("archivalRules must be a list of objects", 400)

    rules = [ArchivalRule.from_dict(item) for item in raw_rules]
    legacy = payload.get("mimeTypeMappings")
    if not rules and isinstance(legacy, list):
        rules = migrate_legacy_mappings(m for m in legacy if isinstance(m, dict))
    default_tool = str(payload.get("defaultArchivalTool") or "")

    try:
        snapshot = get_services().config_store.update(rules, default_tool)
    except RuleValidationError as exc:
        return _json_error(str(exc), 400)

    logger.info(
        "api.config_updated",
        user_id=g.user_id,
        rule_count=len(snapshot.rules),
        default_tool=snapshot.default_tool,
    )
    return jsonify(snapshot.to_dict())


@bp.route("/archival-tools", methods=["GET"])
@admin_required
def archival_tools():
    return jsonify({"tools": get_services().processor.list_available_tools()})


@bp.route("/rules/preview", methods=["POST"])
@authorization_required
def preview_rule():
    payload = request.get_json(silent=True) or {}
    url = str(payload.get("url") or "").strip()
    if not url:
        return _json_error("url is required", 400)
    services = get_services()
    tool = services.processor.select_tool(
        url, str(payload.get("mimeType") or ""), services.config_store.current()
    )
    return jsonify({"tool": tool})


@bp.route("/archives/<post_id>", methods=["GET"])
@authorization_required
def post_archives(post_id: str):
    url = (request.args.get("url") or "").strip()
    if not url:
        return jsonify([])
    try:
        records = get_services().store.post_archives(post_id, url)
    except ArchiveError as exc:
        logger.error("api.archives_lookup_failed", post_id=post_id, error=str(exc))
        return _json_error("Failed to load archives", 500)
    return jsonify([record.to_dict() for record in records])


@bp.route("/events/posted", methods=["POST"])
def message_posted():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get("post"), dict):
        return _json_error("Invalid request body", 400)

    post = payload["post"]
    post_id = str(post.get("id") or "").strip()
    if not post_id:
        return _json_error("post.id is required", 400)

    services = get_services()
    if services.bot_user_id and post.get("user_id") == services.bot_user_id:
        return jsonify({"status": "ignored", "queued": 0})

    futures = services.processor.process_message(
        post_id, str(post.get("message") or ""), services.config_store.current()
    )
    logger.info("api.post_received", post_id=post_id, queued=len(futures))
    return jsonify({"status": "accepted", "queued": len(futures)}), 202
