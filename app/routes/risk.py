"""
RISK ROUTES
===========
"""

from flask import Blueprint
from flask_login import login_required, current_user

from app.routes.responses import success, error
from app.services.authorization_service import AuthorizationError
from app.services.risk_service import (
    RiskError, RiskNotFoundError, calculate_user_risk, get_user_risk, get_kameti_risk,
    get_kameti_risk_summary
)

risk_bp = Blueprint('risk', __name__, url_prefix='/api/risk')


def _risk_error(e):
    if isinstance(e, RiskNotFoundError):
        return error(str(e), 404)
    if isinstance(e, AuthorizationError):
        return error(str(e), 403)
    return error(str(e), 400)


@risk_bp.route('/me')
@login_required
def me():
    return success(risk=calculate_user_risk(current_user.id))


@risk_bp.route('/user/<int:user_id>')
@login_required
def user_risk(user_id):
    try:
        return success(risk=get_user_risk(current_user.id, user_id))
    except (RiskError, AuthorizationError) as e:
        return _risk_error(e)


@risk_bp.route('/kameti/<int:kameti_id>')
@login_required
def kameti_risk(kameti_id):
    try:
        return success(risk=get_kameti_risk(kameti_id, current_user.id))
    except (RiskError, AuthorizationError) as e:
        return _risk_error(e)


@risk_bp.route('/kameti-summary/<int:kameti_id>')
@login_required
def kameti_summary(kameti_id):
    try:
        return success(risk=get_kameti_risk_summary(kameti_id, current_user.id))
    except (RiskError, AuthorizationError) as e:
        return _risk_error(e)
