from flask import jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from marksync.auth import auth_bp
from marksync.models import User
from marksync.services.common import json_object, text_field


def _credentials():
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form
    else:
        payload = json_object(payload)
    username = text_field(payload, "username").strip()
    password = text_field(payload, "password")
    return username, password


@auth_bp.route("/login", methods=["POST"])
def login():
    if current_user.is_authenticated:
        return jsonify({"status": "ok", "user": current_user.as_dict()})

    username, password = _credentials()
    user = User.query.filter_by(username=username).first()
    if user and user.is_active and user.check_password(password):
        login_user(user)
        return jsonify({"status": "ok", "user": user.as_dict()})
    return jsonify({"error": "invalid credentials"}), 401


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "signed_out"})
