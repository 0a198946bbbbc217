"""
Domain errors raised by the workflow, ledger and stock helpers.

Routes let these propagate; the handlers registered by ``register_error_handlers``
turn them into ``{"error": message}`` JSON responses with the matching status.
"""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class BackofficeError(Exception):
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(BackofficeError, ValueError):
    """Missing/invalid input, unknown references, quantity out of bounds."""
    status_code = 400


class StateError(BackofficeError):
    """Transition requested from the wrong status. Re-fetch before retrying."""
    status_code = 409


class NotFoundError(BackofficeError, LookupError):
    status_code = 404


def register_error_handlers(app):

    @app.errorhandler(BackofficeError)
    def _handle_backoffice_error(err):
        if isinstance(err, StateError):
            logger.warning("Rejected transition: %s", err.message)
        return jsonify({'error': err.message}), err.status_code

    @app.errorhandler(HTTPException)
    def _handle_http_error(err):
        return jsonify({'error': err.description or err.name}), err.code

    @app.errorhandler(Exception)
    def _handle_unexpected(err):
        logger.exception("Unhandled error while processing request")
        if app.debug:
            return jsonify({'error': 'Server error', 'details': str(err)}), 500
        return jsonify({'error': 'Server error'}), 500
