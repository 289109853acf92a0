"""HTTP node handler - HTTP Request."""

import json
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from models.nodes import HttpRequestParams
from services.execution.exceptions import NodeExecutionError
from services.execution.models import NodeExecutionContext

logger = get_logger(__name__)


async def handle_http_request(
    node_id: str,
    node_type: str,
    parameters: HttpRequestParams,
    context: NodeExecutionContext,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, Any]:
    """Handle HTTP request node execution.

    Makes HTTP requests to external APIs.

    Args:
        node_id: The node ID
        node_type: The node type (http-request)
        parameters: Validated request config
        context: Execution context
        transport: Optional httpx transport (tests inject a MockTransport)

    Returns:
        {status, statusText, headers, data, url, method}

    Raises:
        NodeExecutionError: timeout, transport failure, or status >= 400 when
            failOnError is set
    """
    method = parameters.method
    headers = {"Content-Type": "application/json", **parameters.headers}

    logger.info("[HTTP Request] Executing", node_id=node_id, method=method, url=parameters.url)

    kwargs: Dict[str, Any] = {"method": method, "url": parameters.url, "headers": headers}

    # Add body for POST/PUT/PATCH
    body = parameters.body
    if method in ('POST', 'PUT', 'PATCH') and body not in (None, ""):
        if isinstance(body, str):
            try:
                kwargs['json'] = json.loads(body)
            except json.JSONDecodeError:
                kwargs['content'] = body
        else:
            kwargs['json'] = body

    try:
        async with httpx.AsyncClient(timeout=parameters.timeout, transport=transport) as client:
            response = await client.request(**kwargs)
    except httpx.TimeoutException as e:
        logger.error("HTTP request timed out", node_id=node_id, url=parameters.url)
        raise NodeExecutionError(
            f"HTTP request timed out after {parameters.timeout} seconds"
        ) from e
    except httpx.HTTPError as e:
        logger.error("HTTP request failed", node_id=node_id, error=str(e))
        raise NodeExecutionError(f"HTTP request failed: {e}") from e

    # Parse response data
    if "application/json" in response.headers.get("content-type", ""):
        try:
            response_data = response.json()
        except ValueError:
            response_data = response.text
    else:
        response_data = response.text

    if response.status_code >= 400 and parameters.fail_on_error:
        raise NodeExecutionError(
            f"HTTP request failed with status {response.status_code} {response.reason_phrase}"
        )

    return {
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "headers": dict(response.headers),
        "data": response_data,
        "url": str(response.url),
        "method": method,
    }
