"""
HTTP invocation surface.

Endpoints:
  GET|POST /report  advertiserId (required), dataRange (optional, default LAST_7_DAYS)
  GET|POST /sdf     advertiserId (required)
  GET      /health

Parameters are read from the query string first, then from a JSON body.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from dv360_ingestion import pipelines
from dv360_ingestion.config import Settings
from dv360_ingestion.errors import InvalidParameterError, JobTimeoutError, MissingParameterError
from dv360_ingestion.sink import TableSink

logger = logging.getLogger(__name__)

SETTINGS_KEY = web.AppKey("settings", Settings)
SINK_KEY = web.AppKey("sink", TableSink)


async def _read_params(request: web.Request) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    if request.can_read_body and request.content_type == "application/json":
        try:
            body = await request.json()
        except ValueError as e:
            raise InvalidParameterError(f"Request body is not valid JSON: {e}") from e
        if isinstance(body, dict):
            params.update(body)
    params.update(request.query)
    return params


async def _invoke(request: web.Request, kind: str) -> web.Response:
    settings = request.app[SETTINGS_KEY]
    sink = request.app[SINK_KEY]

    try:
        params = await _read_params(request)
        advertiser_id = params.get("advertiserId")

        if kind == "report":
            run = pipelines.run_report_pipeline(
                advertiser_id,
                params.get("dataRange"),
                settings=settings,
                sink=sink,
                timeout=settings.request_timeout,
            )
        else:
            run = pipelines.run_sdf_pipeline(
                advertiser_id, settings=settings, sink=sink, timeout=settings.request_timeout
            )

        result = await run

    except (MissingParameterError, InvalidParameterError) as e:
        logger.warning(f"Rejected {kind} request: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=400)

    except (JobTimeoutError, asyncio.TimeoutError) as e:
        logger.error(f"{kind} pipeline timed out: {e}")
        return web.json_response({"success": False, "error": str(e) or "Request timed out"}, status=504)

    except Exception as e:
        logger.error(f"{kind} pipeline failed: {e}", exc_info=True)
        return web.json_response({"success": False, "error": str(e)}, status=500)

    return web.json_response({"success": True, "message": result.message})


async def handle_report(request: web.Request) -> web.Response:
    return await _invoke(request, "report")


async def handle_sdf(request: web.Request) -> web.Response:
    return await _invoke(request, "sdf")


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def create_app(settings: Settings, sink: Optional[TableSink] = None) -> web.Application:
    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[SINK_KEY] = sink or TableSink(settings)
    app.add_routes([
        web.get("/report", handle_report),
        web.post("/report", handle_report),
        web.get("/sdf", handle_sdf),
        web.post("/sdf", handle_sdf),
        web.get("/health", handle_health),
    ])
    return app


def serve(settings: Settings) -> None:
    logger.info(f"Serving DV360 feature adoption on {settings.host}:{settings.port}")
    web.run_app(create_app(settings), host=settings.host, port=settings.port, print=None)
