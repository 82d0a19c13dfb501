"""
AWS call helper: runs boto3 calls off the event loop and translates
botocore errors into controller errors.
"""

import asyncio
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import PlatformError, TransientError

RETRYABLE_ERROR_CODES = {
    'Throttling',
    'ThrottlingException',
    'TooManyRequestsException',
    'RequestLimitExceeded',
    'ProvisionedThroughputExceededException',
    'PriorRequestNotComplete',
    'ServiceUnavailable',
    'ServiceUnavailableException',
    'ServerException',
    'InternalError',
    'InternalServerError',
    'RequestExpired',
}


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


async def call_aws(method: Callable[..., Any], **kwargs) -> Any:
    """Invoke a boto3 client method in a worker thread"""
    name = getattr(method, '__name__', 'aws call')
    try:
        return await asyncio.to_thread(method, **kwargs)
    except ClientError as e:
        code = error_code(e)
        if code in RETRYABLE_ERROR_CODES:
            raise TransientError(f"{name} {code}: {e}", code=code)
        raise PlatformError(f"{name} {code}: {e}", code=code)
    except BotoCoreError as e:
        raise TransientError(f"{name} failed: {e}")
