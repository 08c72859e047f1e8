"""
CommerceML exchange endpoint.

One URL (settings.exchange_path) answers every protocol step, selected
by the `type` and `mode` query parameters. Bodies are plain text the
ERP parses line by line:

    success\\n<cookie name>\\n<token>    checkauth
    zip=no\\nfile_limit=<bytes>          init
    success\\n                           file, import, success
    <orders document>                   query
    failure\\n<message>                  any error
"""

from typing import Optional
import structlog

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from config import settings
from exceptions import AppError
from models.exchange import ExchangeKind, ExchangeMode
from services.exchange_service import get_exchange_service, resolve_step

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["1C Exchange"])

basic_auth = HTTPBasic(auto_error=False)

AUTH_REALM = "1C Exchange"
XML_MEDIA_TYPE = "text/xml; charset=utf-8"


# ===================
# RESPONSES
# ===================

def success_response(body: str = "success\n") -> PlainTextResponse:
    return PlainTextResponse(body)


def failure_response(e: Exception) -> PlainTextResponse:
    """
    Convert exception to a failure body.

    The ERP reads the body, not the status, so everything is 200 except
    authentication problems, which get 401 and a Basic challenge.
    """
    if isinstance(e, AppError):
        logger.error(
            "exchange_request_failed",
            code=e.code,
            message=e.message,
            details=e.details
        )
        message = e.message
        status_code = 401 if e.status_code == 401 else 200
    else:
        logger.error("unexpected_error", error=str(e), type=type(e).__name__)
        message = "An unexpected error occurred"
        status_code = 200

    headers = {"WWW-Authenticate": f'Basic realm="{AUTH_REALM}"'} if status_code == 401 else None

    return PlainTextResponse(
        f"failure\n{message}",
        status_code=status_code,
        headers=headers
    )


# ===================
# ROUTES
# ===================

@router.api_route(settings.exchange_path, methods=["GET", "POST"])
async def exchange(
    request: Request,
    exchange_type: Optional[str] = Query(None, alias="type", description="catalog or sale"),
    mode: Optional[str] = Query(None, description="Protocol step"),
    filename: Optional[str] = Query(None, description="File for file and import steps"),
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth)
):
    """
    Handle one step of the exchange protocol.
    """
    service = get_exchange_service()
    username = credentials.username if credentials else None
    password = credentials.password if credentials else None

    try:
        service.check_enabled()
        service.verify_credentials(username, password)

        kind, step = resolve_step(exchange_type, mode)

        logger.info(
            "exchange_request",
            type=kind.value,
            mode=step.value,
            filename=filename,
            method=request.method
        )

        if step == ExchangeMode.CHECKAUTH:
            session = service.authenticate(kind, username, password)
            cookie_name = settings.session_cookie_name
            response = success_response(f"success\n{cookie_name}\n{session.session_id}")
            response.set_cookie(cookie_name, session.session_id, httponly=True)
            return response

        session = service.get_session(request.cookies.get(settings.session_cookie_name), kind)

        if step == ExchangeMode.INIT:
            params = service.initialize(kind, session)
            return success_response(params.to_body())

        if step == ExchangeMode.FILE:
            content = await request.body()
            if kind == ExchangeKind.CATALOG:
                service.receive_chunk(filename, content, session)
            else:
                service.receive_sale_file(filename, content, session)
            return success_response()

        if step == ExchangeMode.IMPORT:
            service.commit_catalog(filename, session)
            return success_response()

        if step == ExchangeMode.QUERY:
            content = service.export_orders(session)
            return Response(
                content=content,
                media_type=XML_MEDIA_TYPE,
                headers={"Content-Length": str(len(content))}
            )

        # ExchangeMode.SUCCESS
        service.confirm_exported(session)
        return success_response()

    except Exception as e:
        return failure_response(e)
