import logging
from functools import wraps

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for command line use."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def log_operation(func):
    """
    A decorator to log the entry and exit of a coordinator operation.
    It logs the operation name, its arguments, and whether it succeeded or
    returned a classified failure.
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)

        # Skip `self`; message content is logged only by length.
        logged_args = [
            f"<{len(a)} chars>" if isinstance(a, str) and len(a) > 40 else repr(a)
            for a in args[1:]
        ]
        logged_kwargs = {k: repr(v) for k, v in kwargs.items()}

        logger.debug(
            f"Entering operation: {func.__name__} (args: {logged_args}, kwargs: {logged_kwargs})"
        )
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.error(
                f"Error during operation: {func.__name__}. Exception: {type(e).__name__} - {e}",
                exc_info=False,
            )
            raise

        if getattr(result, "ok", True):
            logger.debug(f"Successfully exited operation: {func.__name__}")
        else:
            logger.info(
                f"Operation {func.__name__} failed: {result.error.kind.value} - {result.error.message}"
            )
        return result

    return wrapper
