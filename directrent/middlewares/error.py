import logging
from aiohttp import web
from pydantic import ValidationError

from directrent.errors import EngineError


def error_response(status: int, code: str, message: str, details=None) -> web.Response:
    body = {"success": False, "error": message, "code": code}
    if details:
        body["details"] = details
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """
    Render engine errors as JSON with their API code.

    User-actionable errors go back verbatim. Fatal ones (configuration or
    logic bugs) are logged at CRITICAL and answered with a generic 500.
    """
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EngineError as e:
        if e.fatal:
            logging.critical(f"{e.code} on {request.method} {request.path}: {e.message} {e.details}")
            return error_response(500, e.code, "An unexpected error occurred")
        logging.info(f"{request.method} {request.path} -> {e.code}: {e.message}")
        return error_response(e.status, e.code, e.message, e.details or None)
    except ValidationError as e:
        details = [
            {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        return error_response(400, "VALIDATION_ERROR", "Validation failed", details)
    except ValueError as e:
        return error_response(400, "VALIDATION_ERROR", str(e))
    except Exception as e:
        logging.exception(f"Unhandled exception on {request.method} {request.path}: {e}")
        return error_response(500, "INTERNAL_ERROR", "An unexpected error occurred")
