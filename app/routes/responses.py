"""JSON response helpers shared by the API blueprints."""

from flask import jsonify, request


def success(http_status=200, **payload):
    body = {'success': True}
    body.update(payload)
    return jsonify(body), http_status


def error(message, status=400):
    return jsonify({'success': False, 'message': message}), status


def request_data():
    """JSON body, or form fields for multipart / urlencoded requests."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()
