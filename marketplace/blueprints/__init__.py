"""
Member Resource Marketplace
Blueprint registry.
"""

from datetime import date, datetime

from flask import request


def parse_iso_date(value):
    """Parse ``YYYY-MM-DD`` (or a full ISO timestamp) into a date.

    Returns the raw value unchanged when it cannot be parsed so the service
    layer reports it as a field error.
    """
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        try:
            return datetime.fromisoformat(str(value)).date()
        except ValueError:
            return value


def flag_arg(name):
    """True for ``?name=1|true|yes``."""
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


def json_object():
    """The request's JSON body when it is an object, else an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
