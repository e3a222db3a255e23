# ==============================================================================
# app/errors.py
# ------------------------------------------------------------------------------
# API error taxonomy and the Flask handlers that render it as JSON.
# ==============================================================================

from datetime import datetime

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from app import db


class APIError(Exception):
    """
    Base error for everything the API reports to a client.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        status_code: HTTP status code for this error type
        details: Optional extra context (field errors, offending ids, ...)
    """
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, details=None, status_code=None, code=None):
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self):
        payload = {
            'message': self.message,
            'code': self.code,
            'timestamp': datetime.utcnow().isoformat() + 'Z',
        }
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(APIError):
    status_code = 400
    code = 'VALIDATION_ERROR'


class WorkflowError(APIError):
    """Raised for an action that is not allowed from the commission's current status."""
    status_code = 400
    code = 'INVALID_TRANSITION'


class UnauthorizedError(APIError):
    status_code = 401
    code = 'UNAUTHORIZED'

    def __init__(self, message='Unauthorized', details=None):
        super().__init__(message, details)


class ForbiddenError(APIError):
    status_code = 403
    code = 'FORBIDDEN'

    def __init__(self, message='Access denied', details=None):
        super().__init__(message, details)


class NotFoundError(APIError):
    status_code = 404
    code = 'NOT_FOUND'

    def __init__(self, resource='Resource', details=None):
        super().__init__(f'{resource} not found', details)


class ConflictError(APIError):
    status_code = 409
    code = 'CONFLICT'


def _error_response(error):
    body = error.to_dict()
    body['path'] = request.path
    body['method'] = request.method
    return jsonify({'success': False, 'error': body}), error.status_code


def register_error_handlers(app):
    """Render APIError, HTTP errors and unexpected failures in one JSON shape."""

    @app.errorhandler(APIError)
    def handle_api_error(error):
        if error.status_code >= 500:
            db.session.rollback()
            current_app.logger.error(f"{error.code}: {error.message}")
        return _error_response(error)

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return _error_response(APIError(error.description, status_code=error.code,
                                        code=error.name.upper().replace(' ', '_')))

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        current_app.logger.error(f"Unhandled error on {request.method} {request.path}: {error}", exc_info=True)
        return _error_response(APIError('Internal server error'))
