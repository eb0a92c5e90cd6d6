"""Map exceptions to client responses."""

import logging
import traceback

from platewise.utils.errors import PlatewiseError

logger = logging.getLogger(__name__)


def error_response(error: BaseException) -> tuple[int, dict]:
    """Translate an exception into (status_code, body) for the HTTP layer.

    Known errors keep their message and code. Anything else is reported as
    an internal error and its details only go to the log.
    """
    if isinstance(error, PlatewiseError):
        logger.warning(f"API error ({error.code}): {error.message}")
        return error.status_code, {
            "success": False,
            "error": error.message,
            "code": error.code,
        }

    logger.error("Unexpected error while handling a request:", exc_info=error)

    tb_list = traceback.format_exception(None, error, error.__traceback__)
    logger.error(f"Traceback:\n{''.join(tb_list)}")

    return 500, {
        "success": False,
        "error": "Internal server error",
        "code": "INTERNAL_ERROR",
    }
