"""
AUTHENTICATION ROUTES
=====================
"""

import logging
import os
import re
from datetime import datetime

from flask import Blueprint, current_app, request
from flask_login import login_user, logout_user, login_required, current_user
from werkzeug.utils import secure_filename

from app.extensions import db
from app.models import User, hash_reset_token
from app.routes.responses import success, error, request_data
from app.services.email_service import send_password_reset_email
from app.utils import as_bool

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

logger = logging.getLogger(__name__)

CNIC_PATTERN = re.compile(r'^\d{13}$')
CNIC_EXTENSIONS = {'jpg', 'jpeg', 'png', 'pdf'}


@auth_bp.route('/register', methods=['POST'])
def register():
    data = request_data()
    full_name = (data.get('full_name') or '').strip()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    # Validation
    if not full_name or not email or not password:
        return error('Full name, email and password are required')

    if len(password) < 6:
        return error('Password must be at least 6 characters')

    existing_user = User.query.filter(db.func.lower(User.email) == email).first()
    if existing_user:
        return error('Email already registered')

    cnic = (data.get('cnic') or '').replace('-', '').strip() or None
    if cnic and not CNIC_PATTERN.match(cnic):
        return error('CNIC must be 13 digits')

    new_user = User(full_name=full_name, email=email,
                    phone=(data.get('phone') or '').strip() or None, cnic=cnic)
    new_user.set_password(password)

    db.session.add(new_user)
    db.session.commit()
    logger.info("User %s registered", new_user.id)

    return success(201, message='Registration successful', user=new_user.to_dict())


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request_data()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = User.query.filter(db.func.lower(User.email) == email).first()
    if not user or not user.check_password(password):
        return error('Invalid email or password', 401)

    login_user(user, remember=as_bool(data.get('remember')))
    return success(message=f'Welcome back, {user.full_name}!', user=user.to_dict())


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return success(message='You have been logged out')


@auth_bp.route('/forgot-password', methods=['POST'])
def forgot_password():
    email = (request_data().get('email') or '').strip().lower()
    if not email:
        return error('Email is required')

    user = User.query.filter(db.func.lower(User.email) == email).first()
    if not user:
        return success(message='If an account exists with this email, '
                               'you will receive a password reset link shortly.')

    token = user.issue_reset_token()
    db.session.commit()

    if not send_password_reset_email(user, token):
        user.clear_reset_token()
        db.session.commit()
        return error('Failed to send reset email. Please try again later.', 500)

    logger.info("Password reset link sent to user %s", user.id)
    return success(message='Password reset link has been sent to your email address.')


@auth_bp.route('/reset-password', methods=['POST'])
def reset_password():
    data = request_data()
    token = (data.get('token') or '').strip()
    new_password = data.get('new_password') or ''

    if not token or not new_password:
        return error('Token and new password are required')

    if len(new_password) < 6:
        return error('Password must be at least 6 characters')

    user = User.query.filter(
        User.reset_token_hash == hash_reset_token(token),
        User.reset_token_expires > datetime.utcnow()
    ).first()
    if not user:
        return error('Password reset token is invalid or has expired. Please request a new one.')

    user.set_password(new_password)
    user.clear_reset_token()
    db.session.commit()
    logger.info("Password reset for user %s", user.id)

    return success(message='Your password has been reset. You can now log in.')


@auth_bp.route('/me')
@login_required
def me():
    return success(user=current_user.to_dict())


@auth_bp.route('/profile', methods=['PUT'])
@login_required
def update_profile():
    data = request_data()

    if 'full_name' in data:
        full_name = (data.get('full_name') or '').strip()
        if not full_name:
            return error('Full name cannot be empty')
        current_user.full_name = full_name

    if 'phone' in data:
        current_user.phone = (data.get('phone') or '').strip() or None

    if 'cnic' in data:
        cnic = (data.get('cnic') or '').replace('-', '').strip()
        if cnic and not CNIC_PATTERN.match(cnic):
            return error('CNIC must be 13 digits')
        current_user.cnic = cnic or None

    db.session.commit()
    return success(message='Profile updated', user=current_user.to_dict())


@auth_bp.route('/profile/cnic-image', methods=['POST'])
@login_required
def upload_cnic_image():
    storage = request.files.get('cnic_image')
    if not storage or not storage.filename:
        return error('Please choose a CNIC image to upload')

    extension = storage.filename.rsplit('.', 1)[-1].lower() if '.' in storage.filename else ''
    if extension not in CNIC_EXTENSIONS:
        return error('Only JPG, JPEG, PNG and PDF files are allowed')

    folder = os.path.join(current_app.config['UPLOAD_FOLDER'], 'cnic')
    os.makedirs(folder, exist_ok=True)
    filename = f"user-{current_user.id}-{secure_filename(storage.filename)}"
    storage.save(os.path.join(folder, filename))

    current_user.cnic_image = filename
    db.session.commit()
    return success(message='CNIC image uploaded', user=current_user.to_dict())
