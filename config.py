import os
import tempfile

from dotenv import load_dotenv

basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'change-me-ekameti-secret-key'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'ekameti.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Uploads (dispute proofs, CNIC images)
    UPLOAD_FOLDER = os.environ.get('UPLOAD_FOLDER') or os.path.join(basedir, 'uploads')
    MAX_CONTENT_LENGTH = 30 * 1024 * 1024

    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
    BACKEND_URL = os.environ.get('BACKEND_URL', 'http://localhost:5000')

    # PayFast gateway
    PAYFAST_MERCHANT_ID = os.environ.get('PAYFAST_MERCHANT_ID', '')
    PAYFAST_MERCHANT_KEY = os.environ.get('PAYFAST_MERCHANT_KEY', '')
    PAYFAST_PASSPHRASE = os.environ.get('PAYFAST_PASSPHRASE', '')
    PAYFAST_PROCESS_URL = os.environ.get('PAYFAST_PROCESS_URL',
                                         'https://sandbox.payfast.co.za/eng/process')
    PAYFAST_VERIFY_SIGNATURE = _env_flag('PAYFAST_VERIFY_SIGNATURE', True)

    # Email (simulated when MAIL_SERVER is empty)
    MAIL_SERVER = os.environ.get('MAIL_SERVER', '')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', 587))
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME', '')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD', '')
    MAIL_USE_TLS = _env_flag('MAIL_USE_TLS', True)
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER', 'noreply@ekameti.local')

    NOTIFICATION_LIMIT = 50


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), 'ekameti-test-uploads')
    LOG_LEVEL = 'WARNING'

    PAYFAST_MERCHANT_ID = '10000100'
    PAYFAST_MERCHANT_KEY = '46f0cd694581a'
    PAYFAST_PASSPHRASE = 'jt7NOE43FZPn'
    PAYFAST_VERIFY_SIGNATURE = True

    MAIL_SERVER = ''
