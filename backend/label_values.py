import asyncio
import logging
from typing import List, Sequence

import httpx
from pydantic import ValidationError

from datasources import Datasource
from forwarding import target_url
from schemas import STATUS_SUCCESS, LabelValuesResponse

logger = logging.getLogger(__name__)

# Per-datasource deadline for a label values lookup, in seconds
LABEL_VALUES_TIMEOUT = 30.0


async def _get_label_values(client: httpx.AsyncClient, url: str) -> List[str]:
    response = await client.get(url)
    if response.status_code != 200:
        logger.warning("Error getting %s: status code %d", url, response.status_code)
        return []

    payload = LabelValuesResponse.model_validate_json(response.content)
    if payload.status != STATUS_SUCCESS:
        logger.warning("Ignoring response from %s because status is %s", url, payload.status)
        return []
    return payload.data


async def fetch_label_values(client: httpx.AsyncClient, url: str, timeout: float = LABEL_VALUES_TIMEOUT) -> List[str]:
    """
    Fetch label values from one datasource.

    Any failure (transport error, timeout, non-200 status, undecodable body or
    a status other than "success") is logged and yields an empty list, so one
    broken datasource never fails the whole lookup.
    """
    try:
        return await asyncio.wait_for(_get_label_values(client, url), timeout)
    except asyncio.TimeoutError:
        logger.warning("Error getting %s: timed out after %ss", url, timeout)
    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as e:
        logger.warning("Error getting %s: %s", url, e)
    except ValidationError as e:
        logger.warning("Error decoding response from %s: %s", url, e)
    return []


async def aggregate_label_values(
    client: httpx.AsyncClient,
    path: str,
    datasources: Sequence[Datasource],
    timeout: float = LABEL_VALUES_TIMEOUT,
) -> List[str]:
    """
    Ask every datasource for the values of a label and merge the answers.

    All datasources are queried concurrently, each with its own timeout; the
    call returns once every one of them has answered, failed or timed out.

    Args:
        client: Shared HTTP client
        path: Inbound label values path, e.g. /api/v1/label/job/values
        datasources: Configured datasources
        timeout: Per-datasource deadline in seconds

    Returns:
        list: Distinct label values from all datasources, sorted ascending
    """
    results = await asyncio.gather(
        *(fetch_label_values(client, target_url(ds.url, path), timeout) for ds in datasources)
    )

    merged = set()
    for values in results:
        merged.update(values)
    return sorted(merged)
