import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Sequence, Tuple
from urllib.parse import parse_qs

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from datasources import Datasource
from durations import BadParameter, format_duration, format_time, parse_duration, parse_time
from forwarding import forward, raw_path
from label_values import LABEL_VALUES_TIMEOUT, aggregate_label_values
from schemas import STATUS_SUCCESS, LabelValuesResponse
from selector import select_for_instant, select_for_range

logger = logging.getLogger(__name__)

DATASOURCE_NOT_FOUND = "Datasource for the query is not found\n"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

router = APIRouter()


async def read_params(request: Request) -> Tuple[Dict[str, str], Optional[bytes]]:
    """
    Collect the query parameters of an API request.

    POST requests may carry the parameters as a form body; those take
    precedence over the query string. The body is returned so it can be
    forwarded unchanged.
    """
    params = {}
    for name, value in request.query_params.multi_items():
        params.setdefault(name, value)

    body = None
    if request.method == "POST":
        body = await request.body()
        content_type = request.headers.get("content-type", "")
        if content_type.split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE:
            for name, values in parse_qs(body.decode("latin-1"), keep_blank_values=True).items():
                params[name] = values[0]
    return params, body


@router.api_route("/api/v1/query", methods=["GET", "POST"], include_in_schema=False)
async def query(request: Request):
    """Route an instant query to the finest datasource that retains its time."""
    params, body = await read_params(request)
    t = parse_time(params.get("time", ""))

    ds = select_for_instant(t, request.app.state.datasources)
    if ds is None:
        return PlainTextResponse(DATASOURCE_NOT_FOUND, status_code=400)

    logger.info("request: query, datasource: %s, time: %s", ds.url, format_time(t))
    return await forward(request.app.state.http_client, ds, request, body)


@router.api_route("/api/v1/query_range", methods=["GET", "POST"], include_in_schema=False)
async def query_range(request: Request):
    """Route a range query to the coarsest datasource that still fits its step."""
    params, body = await read_params(request)
    step = parse_duration(params.get("step", ""))
    start = parse_time(params.get("start", ""))
    end = parse_time(params.get("end", ""))

    ds = select_for_range(start, end, step, request.app.state.datasources)
    if ds is None:
        return PlainTextResponse(DATASOURCE_NOT_FOUND, status_code=400)

    logger.info(
        "request: query_range, datasource: %s, step: %s, start: %s, end: %s",
        ds.url, format_duration(step), format_time(start), format_time(end),
    )
    return await forward(request.app.state.http_client, ds, request, body)


@router.get("/api/v1/label/{name}/values")
async def label_values(request: Request):
    """
    Merge the values of a label across all datasources.

    Always answers with status "success": datasources that fail or time out
    are logged and left out of the result.
    """
    path = raw_path(request)
    values = await aggregate_label_values(
        request.app.state.http_client,
        path,
        request.app.state.datasources,
        request.app.state.label_values_timeout,
    )

    try:
        content = LabelValuesResponse(status=STATUS_SUCCESS, data=values).model_dump_json()
    except ValueError as e:
        return PlainTextResponse(f"Error serializing to JSON: {e}\n", status_code=500)

    logger.info("request: %s", path)
    return Response(content=content, media_type="application/json")


async def bad_parameter_handler(request: Request, exc: BadParameter):
    return PlainTextResponse(f"{exc}\n", status_code=400)


def create_app(
    datasources: Sequence[Datasource],
    transport: Optional[httpx.AsyncBaseTransport] = None,
    label_values_timeout: float = LABEL_VALUES_TIMEOUT,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        datasources: Datasources in configuration order; stored as a tuple and
            shared read-only by all requests
        transport: Optional httpx transport for upstream calls
        label_values_timeout: Per-datasource deadline for label values lookups

    Returns:
        FastAPI: The application, ready to be served by uvicorn
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Forwarded queries are unbounded; label values lookups set their own deadline
        async with httpx.AsyncClient(transport=transport, timeout=None) as client:
            app.state.http_client = client
            yield

    # Only the Prometheus API paths are served; everything else is a 404
    app = FastAPI(
        title="Prometheus Query Proxy",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        redirect_slashes=False,
    )
    app.state.datasources = tuple(datasources)
    app.state.label_values_timeout = label_values_timeout

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allows all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allows all methods
        allow_headers=["*"],  # Allows all headers
    )

    app.add_exception_handler(BadParameter, bad_parameter_handler)
    app.include_router(router)
    return app
