from __future__ import annotations

from typing import Any, Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    DdbError,
    DdbInternal,
    DdbThrottled,
    DdbUnavailable,
    DdbValidation,
)

T = TypeVar("T")


_THROTTLE_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
}


def _aws_request_id_from_client_error(e: ClientError) -> str | None:
    try:
        return (e.response or {}).get("ResponseMetadata", {}).get("RequestId")
    except Exception:
        return None


def _err_code_from_client_error(e: ClientError) -> str | None:
    try:
        return (e.response or {}).get("Error", {}).get("Code")
    except Exception:
        return None


def _err_message_from_client_error(e: ClientError) -> str:
    try:
        msg = (e.response or {}).get("Error", {}).get("Message")
    except Exception:
        msg = None
    return str(msg or e)


def map_store_error(
    *,
    operation: str,
    table_name: str | None,
    key: dict[str, Any] | None,
    exc: Exception,
) -> DdbError:
    if isinstance(exc, DdbError):
        return exc

    if isinstance(exc, ClientError):
        code = _err_code_from_client_error(exc) or ""
        aws_request_id = _aws_request_id_from_client_error(exc)
        detail = _err_message_from_client_error(exc)

        if code in ("ValidationException", "ParamValidationError"):
            return DdbValidation(
                message=f"DynamoDB {operation} request validation failed: {detail}",
                operation=operation,
                table_name=table_name,
                key=key,
                aws_request_id=aws_request_id,
                retryable=False,
                cause=exc,
            )

        if code in ("AccessDeniedException", "UnrecognizedClientException", "ResourceNotFoundException"):
            return DdbUnavailable(
                message=f"DynamoDB {operation} rejected ({code}): {detail}",
                operation=operation,
                table_name=table_name,
                key=key,
                aws_request_id=aws_request_id,
                retryable=False,
                cause=exc,
            )

        if code in _THROTTLE_CODES:
            # Flagged retryable for callers; the batch core itself never retries these.
            return DdbThrottled(
                message=f"DynamoDB {operation} throttled or unavailable ({code}): {detail}",
                operation=operation,
                table_name=table_name,
                key=key,
                aws_request_id=aws_request_id,
                retryable=True,
                cause=exc,
            )

        return DdbInternal(
            message=f"DynamoDB {operation} failed ({code or 'ClientError'}): {detail}",
            operation=operation,
            table_name=table_name,
            key=key,
            aws_request_id=aws_request_id,
            retryable=False,
            cause=exc,
        )

    if isinstance(exc, BotoCoreError):
        return DdbUnavailable(
            message=f"DynamoDB {operation} client error: {exc}",
            operation=operation,
            table_name=table_name,
            key=key,
            retryable=True,
            cause=exc,
        )

    return DdbInternal(
        message=f"DynamoDB {operation} failed: {exc}",
        operation=operation,
        table_name=table_name,
        key=key,
        retryable=False,
        cause=exc,
    )


def ddb_call(
    operation: str,
    fn: Callable[[], T],
    *,
    table_name: str | None = None,
    key: dict[str, Any] | None = None,
) -> T:
    """Run one store call, translating any failure into a `DdbError`.

    A single attempt only: a rejected call is a hard failure for the bulk
    operation. Partial-batch responses are not failures and pass through.
    """
    try:
        return fn()
    except DdbError:
        raise
    except Exception as e:  # noqa: BLE001
        raise map_store_error(
            operation=operation,
            table_name=table_name,
            key=key,
            exc=e,
        ) from e
