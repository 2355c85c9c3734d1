"""boto3 client construction and botocore error translation."""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ReadTimeoutError
from botocore.exceptions import ConnectionError as BotoConnectionError

from controlplane.errors import CollaboratorError, ControlPlaneError, TransientError

DEFAULT_TIMEOUT_SECONDS = 30

_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ProvisionedThroughputExceededException",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
    "IncorrectState",
    "IncorrectModificationState",
}


def create_client(service: str, region: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Any:
    """Client with connect/read timeouts; botocore's own retries are off since call_with_retry owns them."""
    return boto3.client(
        service,
        region_name=region,
        config=Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def is_transient(error: ClientError) -> bool:
    code = error_code(error)
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return code in _TRANSIENT_CODES or status >= 500


def translate(operation: str, error: BotoCoreError | ClientError) -> ControlPlaneError:
    """Map a botocore failure onto the controller taxonomy."""
    if isinstance(error, (BotoConnectionError, ReadTimeoutError)):
        return TransientError(f"{operation}: {error}")
    if isinstance(error, ClientError) and is_transient(error):
        return TransientError(f"{operation}: {error}")
    return CollaboratorError(f"{operation}: {error}")


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise timeouts, throttling and 5xx as TransientError; any other botocore failure as CollaboratorError."""
    try:
        yield
    except (BotoCoreError, ClientError) as e:
        raise translate(operation, e) from e
