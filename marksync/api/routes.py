from __future__ import annotations

from flask import current_app, g, jsonify, request

from marksync.api import api_bp
from marksync.errors import ValidationError
from marksync.extensions import db
from marksync.models import (
    CHANGE_DELETE,
    CHANGE_INSERT,
    CHANGE_UPDATE,
    ApiToken,
    Bookmark,
    User,
)
from marksync.services.changes import events_since, latest_cursor, log_change_event
from marksync.services.common import (
    clean_bookmark_input,
    json_object,
    text_field,
    validate_title,
    validate_url,
)
from marksync.services.security import api_auth_required


def _validation_error(exc: ValidationError):
    return jsonify({"error": exc.message, "field": exc.field}), 400


def _get_user_bookmark_or_404(user_id: int, bookmark_id: int):
    bookmark = Bookmark.query.filter_by(id=bookmark_id, user_id=user_id).first()
    if not bookmark:
        return None, (jsonify({"error": "bookmark not found"}), 404)
    return bookmark, None


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Marksync"})


@api_bp.route("/auth/register", methods=["POST"])
def register_api():
    payload = json_object(request.get_json(silent=True))
    username = text_field(payload, "username").strip()
    password = text_field(payload, "password")
    if not username or not password:
        return jsonify({"error": "username and password are required"}), 400
    if User.query.filter_by(username=username).first():
        return jsonify({"error": "username already exists"}), 409

    user = User(username=username, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return jsonify({"status": "created", "user_id": user.id}), 201


@api_bp.route("/auth/token", methods=["POST"])
def create_token_with_credentials():
    payload = json_object(request.get_json(silent=True))
    username = text_field(payload, "username").strip()
    password = text_field(payload, "password")
    token_name = text_field(payload, "token_name").strip() or "Marksync API Token"

    user = User.query.filter_by(username=username).first()
    if not user or not user.is_active or not user.check_password(password):
        return jsonify({"error": "invalid credentials"}), 401

    token, token_hash = ApiToken.issue_token()
    row = ApiToken(user_id=user.id, name=token_name, token_hash=token_hash)
    db.session.add(row)
    db.session.commit()
    return jsonify({"token": token, "token_name": token_name, "user_id": user.id})


@api_bp.route("/me", methods=["GET"])
@api_auth_required
def me_api():
    return jsonify(g.api_user.as_dict())


@api_bp.route("/bookmarks", methods=["GET"])
@api_auth_required
def bookmarks_list_api():
    user = g.api_user
    items = (
        Bookmark.query.filter_by(user_id=user.id)
        .order_by(Bookmark.created_at.desc(), Bookmark.id.desc())
        .all()
    )
    return jsonify({"items": [item.as_dict() for item in items]})


@api_bp.route("/bookmarks", methods=["POST"])
@api_auth_required
def bookmarks_create_api():
    user = g.api_user
    payload = json_object(request.get_json(silent=True))
    try:
        title, url = clean_bookmark_input(payload.get("title"), payload.get("url"))
    except ValidationError as exc:
        return _validation_error(exc)

    bookmark = Bookmark(user_id=user.id, title=title, url=url)
    db.session.add(bookmark)
    db.session.flush()
    log_change_event(user.id, CHANGE_INSERT, bookmark)
    db.session.commit()
    return jsonify(bookmark.as_dict()), 201


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["GET"])
@api_auth_required
def bookmarks_get_api(bookmark_id: int):
    bookmark, error = _get_user_bookmark_or_404(g.api_user.id, bookmark_id)
    if error:
        return error
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["PATCH"])
@api_auth_required
def bookmarks_update_api(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error

    payload = json_object(request.get_json(silent=True))
    try:
        title = validate_title(payload.get("title")) if "title" in payload else None
        url = validate_url(payload.get("url")) if "url" in payload else None
    except ValidationError as exc:
        return _validation_error(exc)

    changed = False
    if title is not None and title != bookmark.title:
        bookmark.title = title
        changed = True
    if url is not None and url != bookmark.url:
        bookmark.url = url
        changed = True

    if changed:
        db.session.flush()
        log_change_event(user.id, CHANGE_UPDATE, bookmark)
    db.session.commit()
    return jsonify(bookmark.as_dict())


@api_bp.route("/bookmarks/<int:bookmark_id>", methods=["DELETE"])
@api_auth_required
def bookmarks_delete_api(bookmark_id: int):
    user = g.api_user
    bookmark, error = _get_user_bookmark_or_404(user.id, bookmark_id)
    if error:
        return error

    log_change_event(user.id, CHANGE_DELETE, bookmark)
    db.session.delete(bookmark)
    db.session.commit()
    return jsonify({"status": "deleted", "bookmark_id": bookmark_id})


@api_bp.route("/changes", methods=["GET"])
@api_auth_required
def changes_pull():
    user = g.api_user
    since = request.args.get("since", default=0, type=int)
    max_limit = current_app.config["CHANGES_PAGE_LIMIT"]
    limit = request.args.get("limit", default=max_limit, type=int)
    limit = max(1, min(limit, max_limit))
    events = events_since(user.id, since, limit)
    cursor = events[-1].id if events else since
    return jsonify(
        {
            "events": [event.as_dict() for event in events],
            "cursor": cursor,
            "has_more": len(events) == limit,
        }
    )


@api_bp.route("/changes/head", methods=["GET"])
@api_auth_required
def changes_head():
    return jsonify({"cursor": latest_cursor(g.api_user.id)})
