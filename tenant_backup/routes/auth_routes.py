"""
Authentication routes: bearer token issuance and identity lookup.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from tenant_backup.auth import issue_token, verify_password
from tenant_backup.models import User


bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/token', methods=['POST'])
def token():
    """
    Exchange username and password for a bearer token.

    Expects JSON: {"username": ..., "password": ...}

    Returns:
        JSON with access_token, token_type and expires_in (seconds)
    """
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = User.query.filter_by(username=username).first()

    if not user or not verify_password(user.password_hash, password):
        current_app.logger.warning(f"Failed login attempt for {username}")
        return jsonify({'error': 'Invalid username or password'}), 401

    if not user.active:
        return jsonify({'error': 'Account is disabled'}), 401

    current_app.logger.info(f"Issued token for {username}")
    return jsonify({
        'access_token': issue_token(user),
        'token_type': 'bearer',
        'expires_in': int(current_app.config['TOKEN_TTL'].total_seconds())
    })


@bp.route('/me', methods=['GET'])
@login_required
def me():
    """Return the identity behind the bearer token."""
    return jsonify({
        'id': current_user.id,
        'username': current_user.username,
        'role': current_user.user.role
    })
