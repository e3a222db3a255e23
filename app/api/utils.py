# ==============================================================================
# app/api/utils.py
# ------------------------------------------------------------------------------
# Request and response helpers shared by the API routes.
# ==============================================================================

import json
import os
from datetime import date

from flask import current_app, jsonify, request
from werkzeug.datastructures import MultiDict

from app.errors import ValidationError


def json_formdata(payload):
    """
    Converts a decoded JSON object into the MultiDict WTForms reads. Lists
    become repeated keys, True becomes 'y' and False/None are left out.
    """
    formdata = MultiDict()
    for key, value in (payload or {}).items():
        if value is None or value is False:
            continue
        if value is True:
            formdata.add(key, 'y')
        elif isinstance(value, (list, tuple)):
            for item in value:
                formdata.add(key, str(item))
        elif isinstance(value, dict):
            formdata.add(key, json.dumps(value))
        else:
            formdata.add(key, str(value))
    return formdata


def get_payload():
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload


def validate_form(form):
    """Raises ValidationError with the field errors when the form does not validate."""
    if not form.validate():
        raise ValidationError('Invalid request data', details=form.errors)
    return form.data


def success(data=None, status=200, **extra):
    body = {'success': True, 'data': data}
    body.update(extra)
    return jsonify(body), status


def paginate(query):
    """Applies ?page=&per_page= to a query and returns (items, pagination dict)."""
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('per_page', current_app.config['API_PAGE_SIZE'], type=int)
    per_page = max(1, min(per_page, 200))
    result = query.paginate(page=max(page, 1), per_page=per_page, error_out=False)
    return result.items, {
        'page': result.page,
        'per_page': result.per_page,
        'total': result.total,
        'pages': result.pages,
    }


def date_arg(name):
    """Reads an optional YYYY-MM-DD query argument."""
    value = request.args.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"'{name}' must be a date in YYYY-MM-DD format")


def bool_arg(name, default=False):
    value = request.args.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'y')


def allowed_file(filename):
    """Checks if the file extension is allowed based on the app config."""
    return '.' in filename and \
           os.path.splitext(filename)[1].lower() in current_app.config['ALLOWED_EXTENSIONS']
