from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class BillingError(APIException):
    """Base class for errors raised by the billing and delivery services."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Billing operation failed."
    default_code = "billing_error"


class RecordNotFound(BillingError, NotFound):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Record not found."
    default_code = "not_found"


class InvalidState(BillingError):
    """The record exists but is not in a state that allows the operation."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Record is not in a valid state for this operation."
    default_code = "invalid_state"


class InvalidRequest(BillingError):
    default_detail = "Invalid request."
    default_code = "invalid_request"


class Aborted(BillingError):
    """A storage failure interrupted the operation; nothing was persisted."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Operation aborted. Please retry."
    default_code = "aborted"


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    InvalidState: "invalid_state",
    InvalidRequest: "invalid_request",
    Aborted: "aborted",
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    Http404: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    response = drf_exception_handler(exc, context)

    if response is None:
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    if isinstance(exc, BillingError):
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.log(
            logging.ERROR if isinstance(exc, Aborted) else logging.INFO,
            "billing_request_rejected code=%s view=%s message=%s",
            code,
            view_name,
            message,
        )
    if isinstance(exc, Aborted):
        response["Retry-After"] = "1"

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
