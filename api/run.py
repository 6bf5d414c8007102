# api/run.py
# Launcher for the CRM gateway.
# - Takes the one-time OAuth authorization code as the LAST command-line
#   argument (falls back to AUTH_CODE from the environment / .env)
# - Builds the FastAPI app and starts Uvicorn on HOST:APP_PORT
# - If the code exchange fails, startup fails and the process exits non-zero:
#   without a credential every CRM call would fail anyway.
#
# Usage: python -m api.run <authorization_code>

import sys
from typing import List, Optional

import uvicorn

from crm_gateway.config import settings
from crm_gateway.logging_setup import configure_logging, get_logger


def resolve_auth_code(argv: List[str]) -> Optional[str]:
    args = [a for a in argv[1:] if a.strip()]
    if args:
        return args[-1].strip()
    return (settings.AUTH_CODE or "").strip() or None


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    log = get_logger()

    code = resolve_auth_code(sys.argv if argv is None else argv)
    if not code:
        log.error("missing_authorization_code", hint="pass it as an argument or set AUTH_CODE")
        return 2

    # Import here so config errors surface through the logger above
    from api.main import create_app

    log.info("starting", host=settings.HOST, port=settings.APP_PORT)
    server = uvicorn.Server(
        uvicorn.Config(create_app(auth_code=code), host=settings.HOST, port=settings.APP_PORT, lifespan="on", log_level="info")
    )
    server.run()
    # uvicorn leaves `started` False when the lifespan startup (code exchange) failed
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(main())
