"""
Error taxonomy and retry utilities

Every failure that crosses a tool boundary is reduced to one of six codes.
Only NETWORK and TIMEOUT are considered transient; everything else points at
a structural mismatch with the site and is surfaced immediately.
"""
import asyncio
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(str, Enum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    SELECTOR = "SELECTOR"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"


RECOVERABLE_CODES = frozenset({ErrorCode.NETWORK, ErrorCode.TIMEOUT})


class ToolError(BaseModel):
    """Serializable description of a categorized failure"""
    code: ErrorCode
    message: str
    recoverable: bool
    cause: Optional[str] = None


# ============================================
# EXCEPTION HIERARCHY
# ============================================

class CopilotError(Exception):
    """Base class for categorized failures"""
    code: ErrorCode = ErrorCode.UNKNOWN
    recoverable: bool = False

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_tool_error(self) -> ToolError:
        return ToolError(
            code=self.code,
            message=self.message,
            recoverable=self.recoverable,
            cause=repr(self.cause) if self.cause else None,
        )


class NetworkError(CopilotError):
    code = ErrorCode.NETWORK
    recoverable = True


class ActionTimeoutError(CopilotError):
    code = ErrorCode.TIMEOUT
    recoverable = True

    def __init__(self, message: str, timeout_ms: Optional[int] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.timeout_ms = timeout_ms


class SelectorError(CopilotError):
    code = ErrorCode.SELECTOR

    def __init__(self, message: str, selector: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.selector = selector


class AuthError(CopilotError):
    code = ErrorCode.AUTH


class InputValidationError(CopilotError):
    code = ErrorCode.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause)
        self.field = field


class UnknownActionError(CopilotError):
    code = ErrorCode.UNKNOWN


class SessionCancelledError(Exception):
    """Raised cooperatively when a session is cancelled between steps"""


def raise_if_cancelled(is_cancelled: Optional[Callable[[], bool]], where: str = ""):
    if is_cancelled is not None and is_cancelled():
        suffix = f" during {where}" if where else ""
        raise SessionCancelledError(f"Session cancelled{suffix}")


_ERROR_CLASSES = {
    ErrorCode.NETWORK: NetworkError,
    ErrorCode.TIMEOUT: ActionTimeoutError,
    ErrorCode.SELECTOR: SelectorError,
    ErrorCode.AUTH: AuthError,
    ErrorCode.VALIDATION: InputValidationError,
    ErrorCode.UNKNOWN: UnknownActionError,
}


def error_from_tool_error(tool_error: ToolError) -> CopilotError:
    """Rebuild the exception matching a categorized ToolError"""
    return _ERROR_CLASSES[tool_error.code](tool_error.message)


# ============================================
# CATEGORIZATION
# ============================================

_MESSAGE_HEURISTICS = [
    (ErrorCode.TIMEOUT, ("timeout", "timed out")),
    (ErrorCode.NETWORK, ("net::", "network", "econnrefused", "enotfound", "econnreset", "connection")),
    (ErrorCode.SELECTOR, ("selector", "locator", "element", "not found")),
    (ErrorCode.AUTH, ("auth", "login", "unauthorized", "forbidden", "401", "403", "credential")),
    (ErrorCode.VALIDATION, ("validation", "invalid")),
]


def _tool_error(code: ErrorCode, message: str, cause: Optional[BaseException] = None) -> ToolError:
    return ToolError(
        code=code,
        message=message,
        recoverable=code in RECOVERABLE_CODES,
        cause=repr(cause) if cause is not None else None,
    )


def categorize_error(error: Union[BaseException, ToolError, Any]) -> ToolError:
    """
    Map any failure to a ToolError.

    Structured types are checked first, message and class-name heuristics
    second. Categorizing an already-categorized error preserves its code and
    recoverable flag.
    """
    if isinstance(error, ToolError):
        return error.model_copy()

    if isinstance(error, CopilotError):
        return error.to_tool_error()

    if not isinstance(error, BaseException):
        return _tool_error(ErrorCode.UNKNOWN, str(error))

    message = str(error) or error.__class__.__name__

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, PlaywrightTimeoutError)):
        return _tool_error(ErrorCode.TIMEOUT, message, error)
    if isinstance(error, ConnectionError):
        return _tool_error(ErrorCode.NETWORK, message, error)
    if isinstance(error, PydanticValidationError):
        return _tool_error(ErrorCode.VALIDATION, message, error)

    haystack = f"{error.__class__.__name__} {message}".lower()
    for code, needles in _MESSAGE_HEURISTICS:
        if any(needle in haystack for needle in needles):
            return _tool_error(code, message, error)

    return _tool_error(ErrorCode.UNKNOWN, message, error)


def is_recoverable(error: Union[BaseException, ToolError]) -> bool:
    return categorize_error(error).recoverable


# ============================================
# RETRY
# ============================================

class RetryConfig(BaseModel):
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000


def calculate_backoff_delay(attempt: int, base_delay_ms: int, max_delay_ms: int, jitter: Optional[float] = None) -> float:
    """
    Exponential backoff with up to 25% jitter, capped at max_delay_ms.

    Args:
        attempt: Zero-based retry attempt
        base_delay_ms: Delay for the first retry before jitter
        max_delay_ms: Upper bound for any delay
        jitter: Fraction in [0, 0.25]; random when omitted
    """
    if jitter is None:
        jitter = random.random() * 0.25
    exponential = base_delay_ms * (2 ** attempt)
    return min(exponential * (1 + jitter), max_delay_ms)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
) -> T:
    """
    Run an async operation, retrying recoverable failures with backoff.

    Non-recoverable failures are re-raised on the first occurrence. After
    max_retries retries the last error is re-raised.
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            categorized = categorize_error(e)
            if not categorized.recoverable:
                raise
            if attempt >= config.max_retries:
                logger.warning(f"RETRY: Giving up after {attempt + 1} attempts: {categorized.message}")
                raise

            delay_ms = calculate_backoff_delay(attempt, config.base_delay_ms, config.max_delay_ms)
            logger.info(
                f"RETRY: {categorized.code.value} on attempt {attempt + 1}, retrying in {delay_ms:.0f}ms"
            )
            if on_retry:
                on_retry(e, attempt + 1, delay_ms)
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1


async def execute_with_timeout(awaitable: Awaitable[T], timeout_ms: int, operation: str) -> T:
    """Await with a deadline, raising ActionTimeoutError when it passes"""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        raise ActionTimeoutError(f"TIMEOUT: {operation} exceeded {timeout_ms}ms", timeout_ms, e) from e


__all__ = [
    'ErrorCode', 'ToolError', 'CopilotError', 'NetworkError', 'ActionTimeoutError',
    'SelectorError', 'AuthError', 'InputValidationError', 'UnknownActionError',
    'SessionCancelledError', 'raise_if_cancelled', 'categorize_error', 'is_recoverable', 'error_from_tool_error',
    'RetryConfig', 'calculate_backoff_delay', 'with_retry', 'execute_with_timeout',
]
