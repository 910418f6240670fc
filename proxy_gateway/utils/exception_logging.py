"""
Helpers for turning forwarding failures into log lines and client-facing text.

Transport errors raised from inside task groups can arrive wrapped in exception
groups, so both helpers look through ``exceptions`` when it is present.
"""

import logging


def _safe_str(obj) -> str:
    """
    Convert an object to string, falling back to repr or the type name when
    ``__str__`` itself raises.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def _sub_exceptions(exception) -> list:
    if exception is None or not hasattr(exception, "exceptions"):
        return []
    return _safe_get_exceptions(exception)


def describe_exception(exception: Exception) -> str:
    """
    Short description of a failure for an error response body.

    Several transport errors (read timeouts in particular) carry an empty
    message; the exception type name is used for those.
    """
    if exception is None:
        return "None"
    text = _safe_str(exception).strip()
    if text:
        return text
    return type(exception).__name__


def format_exception_message(exception: Exception) -> str:
    """
    Format an exception message, including sub-exceptions for exception groups.

    Args:
        exception: The exception to format

    Returns:
        A formatted string describing the exception
    """
    sub_exceptions = _sub_exceptions(exception)
    if not sub_exceptions:
        return describe_exception(exception)

    parts = [
        f"{type(sub_exc).__name__}: {describe_exception(sub_exc)}"
        for sub_exc in sub_exceptions
    ]
    return f"{describe_exception(exception)} (Sub-exceptions: {'; '.join(parts)})"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception, and each sub-exception when it is an exception group.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    safe_prefix = _safe_str(prefix) if prefix is not None else ""
    sub_exceptions = _sub_exceptions(exception)

    if not sub_exceptions:
        logger.log(
            level,
            f"{safe_prefix} Exception: {describe_exception(exception)}",
            exc_info=exception if exception is not None else False,
        )
        return

    logger.log(
        level,
        f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
        f"{describe_exception(exception)}",
    )
    for i, sub_exc in enumerate(sub_exceptions):
        logger.log(
            level,
            f"{safe_prefix} Sub-exception {i+1}: {type(sub_exc).__name__}: "
            f"{describe_exception(sub_exc)}",
            exc_info=sub_exc,
        )
