import json
from typing import Any

from aiohttp import web

from utils.serializers import dumps

CART_SESSION_HEADER = "X-Cart-Session"


async def read_json(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=dumps({"success": False, "error": "Request body must be valid JSON"}),
            content_type="application/json",
        )
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(
            text=dumps({"success": False, "error": "Request body must be a JSON object"}),
            content_type="application/json",
        )
    return data


def json_response(data: Any, status: int = 200, headers: dict = None) -> web.Response:
    return web.json_response(data, status=status, headers=headers, dumps=dumps)


def error_response(error: str, status: int, **extra) -> web.Response:
    return json_response({"success": False, "error": error, **extra}, status=status)
