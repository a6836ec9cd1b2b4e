"""
Django REST Framework exception handler.

Billing service exceptions and DRF's own exceptions are rendered in the same
error envelope.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound as DRFNotFound,
    PermissionDenied,
    Throttled,
    ValidationError as DRFValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler

from ..exceptions import (
    BillingError,
    GatewayFailure,
    InvalidState,
    NotFound,
    ValidationFailure,
    WebhookSignatureError,
)
from .errors import ErrorCode, ErrorDetail, ErrorResponse, FieldError, field_errors_from_mapping

logger = logging.getLogger(__name__)

BILLING_ERRORS = (
    (NotFound, ErrorCode.RESOURCE_NOT_FOUND, status.HTTP_404_NOT_FOUND),
    (InvalidState, ErrorCode.INVALID_STATE_TRANSITION, status.HTTP_409_CONFLICT),
    (ValidationFailure, ErrorCode.VALIDATION_ERROR, status.HTTP_400_BAD_REQUEST),
    (WebhookSignatureError, ErrorCode.WEBHOOK_SIGNATURE_INVALID, status.HTTP_400_BAD_REQUEST),
    (GatewayFailure, ErrorCode.GATEWAY_ERROR, status.HTTP_502_BAD_GATEWAY),
)


def _request_id(context: Dict[str, Any]) -> str:
    request = context.get("request")
    request_id = getattr(request, "request_id", None) if request else None
    return request_id or str(uuid.uuid4())


def custom_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    request_id = _request_id(context)

    if isinstance(exc, BillingError):
        return _billing_error_response(exc, request_id)

    response = exception_handler(exc, context)
    if response is not None:
        error_response = _convert_to_standard_format(exc, request_id)
        return Response(error_response.to_dict(), status=response.status_code, headers=_passthrough_headers(response))

    return response


def _passthrough_headers(response: Response) -> Dict[str, str]:
    return {name: response[name] for name in ("WWW-Authenticate", "Retry-After", "Allow") if response.has_header(name)}


def _billing_error_response(exc: BillingError, request_id: str) -> Response:
    for exc_type, code, status_code in BILLING_ERRORS:
        if isinstance(exc, exc_type):
            break
    else:
        code, status_code = ErrorCode.INTERNAL_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR

    fields = None
    if isinstance(exc, ValidationFailure):
        fields = field_errors_from_mapping(exc.errors)
    if isinstance(exc, GatewayFailure):
        logger.error(f"Gateway failure [{request_id}]: {exc.message} ({exc.code})")

    error_response = ErrorResponse(
        error=ErrorDetail(code=code.value, message=exc.message, fields=fields),
        request_id=request_id,
    )
    return Response(error_response.to_dict(), status=status_code)


def _convert_to_standard_format(exc: Exception, request_id: str) -> ErrorResponse:
    if isinstance(exc, NotAuthenticated):
        detail = ErrorDetail(
            code=ErrorCode.AUTHENTICATION_REQUIRED.value,
            message="Authentication required. Please log in.",
        )
    elif isinstance(exc, AuthenticationFailed):
        detail = ErrorDetail(
            code=ErrorCode.AUTHENTICATION_FAILED.value,
            message=str(exc.detail) if exc.detail else "Authentication failed.",
        )
    elif isinstance(exc, PermissionDenied):
        detail = ErrorDetail(
            code=ErrorCode.PERMISSION_DENIED.value,
            message=str(exc.detail) if exc.detail else "You do not have permission to perform this action.",
        )
    elif isinstance(exc, DRFNotFound):
        detail = ErrorDetail(
            code=ErrorCode.RESOURCE_NOT_FOUND.value,
            message=str(exc.detail) if exc.detail else "Resource not found.",
        )
    elif isinstance(exc, MethodNotAllowed):
        detail = ErrorDetail(code=ErrorCode.METHOD_NOT_ALLOWED.value, message=str(exc.detail))
    elif isinstance(exc, Throttled):
        wait = exc.wait
        message = f"Too many requests. Please try again in {int(wait)} seconds." if wait else "Too many requests. Please try again later."
        detail = ErrorDetail(code=ErrorCode.RATE_LIMITED.value, message=message)
    elif isinstance(exc, DRFValidationError):
        detail = ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR.value,
            message="Validation failed. Please check your input.",
            fields=_extract_field_errors(exc.detail),
        )
    elif isinstance(exc, APIException):
        detail = ErrorDetail(
            code=ErrorCode.INTERNAL_ERROR.value,
            message=str(exc.detail) if exc.detail else "An error occurred.",
        )
    else:
        detail = ErrorDetail(code=ErrorCode.INTERNAL_ERROR.value, message="An unexpected error occurred.")
    return ErrorResponse(error=detail, request_id=request_id)


def _extract_field_errors(detail: Any, prefix: str = "") -> List[FieldError]:
    errors = []

    if isinstance(detail, dict):
        for field_name, field_errors in detail.items():
            full_field = f"{prefix}{field_name}"
            if isinstance(field_errors, dict):
                errors.extend(_extract_field_errors(field_errors, f"{full_field}."))
            elif isinstance(field_errors, list) and any(isinstance(e, dict) for e in field_errors):
                # Nested list serializers report one dict per item.
                for index, item in enumerate(field_errors):
                    if item:
                        errors.extend(_extract_field_errors(item, f"{full_field}.{index}."))
            elif isinstance(field_errors, list):
                errors.extend(_field_error(full_field, error) for error in field_errors)
            else:
                errors.append(_field_error(full_field, field_errors))
    elif isinstance(detail, list):
        errors.extend(_field_error("__all__", error) for error in detail)
    else:
        errors.append(_field_error("__all__", detail))

    return errors


def _field_error(field_name: str, error: Any) -> FieldError:
    code = _map_drf_code(error.code) if hasattr(error, "code") else ErrorCode.FIELD_INVALID.value
    return FieldError(field=field_name, code=code, message=str(error))


def _map_drf_code(code: str) -> str:
    code_mapping = {
        "required": ErrorCode.FIELD_REQUIRED.value,
        "blank": ErrorCode.FIELD_REQUIRED.value,
        "null": ErrorCode.FIELD_REQUIRED.value,
        "invalid": ErrorCode.FIELD_INVALID.value,
        "max_length": ErrorCode.FIELD_TOO_LONG.value,
        "max_value": ErrorCode.FIELD_OUT_OF_RANGE.value,
        "min_value": ErrorCode.FIELD_OUT_OF_RANGE.value,
        "max_digits": ErrorCode.FIELD_OUT_OF_RANGE.value,
        "invalid_choice": ErrorCode.FIELD_INVALID.value,
        "does_not_exist": ErrorCode.RESOURCE_NOT_FOUND.value,
    }
    return code_mapping.get(code, ErrorCode.FIELD_INVALID.value)
