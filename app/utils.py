import calendar
import random
import string
from datetime import date, datetime, timedelta

CODE_ALPHABET = string.ascii_uppercase + string.digits
BASE36_ALPHABET = string.digits + string.ascii_lowercase


def generate_code(prefix, length=8):
    """Return a readable identifier such as ``KAMETI-7Q2ZK1WD``."""
    suffix = ''.join(random.choices(CODE_ALPHABET, k=length))
    return f"{prefix}-{suffix}"


def to_base36(number):
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return ''.join(reversed(digits))


def timestamp_ms(moment=None):
    moment = moment or datetime.utcnow()
    return int((moment - datetime(1970, 1, 1)).total_seconds() * 1000)


def add_months(start, months):
    """Add calendar months, clamping the day to the target month's length."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def parse_iso_date(value):
    """Parse ``YYYY-MM-DD`` (or a full ISO timestamp) into a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValueError("Date is required")
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value}")


def iso(value):
    return value.isoformat() if value else None


FREQUENCY_STEPS = {
    'weekly': timedelta(days=7),
    'biweekly': timedelta(days=14),
    'monthly': 1,
    'quarterly': 3,
}


def round_due_date(start_date, frequency, round_number):
    """Due date of a contribution round; round 1 is due on the start date."""
    step = FREQUENCY_STEPS.get(frequency, 1)
    offset = max(round_number - 1, 0)
    if isinstance(step, timedelta):
        return start_date + step * offset
    return add_months(start_date, step * offset)


def as_bool(value, default=False):
    """Read a JSON boolean or a form value such as ``'true'`` / ``'0'``."""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
