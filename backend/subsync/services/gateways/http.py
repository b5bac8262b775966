"""Small httpx wrapper shared by the REST-based gateways"""
import logging
from typing import Any, Dict, Optional

import httpx

from subsync.core.exceptions import NotFound, UpstreamError

logger = logging.getLogger(__name__)


def request_json(
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    timeout: float,
    json: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Send a request and return the decoded JSON body.

    Raises:
        NotFound: the processor answered 404
        UpstreamError: timeout, transport failure, or any other non-2xx answer
    """
    try:
        resp = httpx.request(method, url, headers=headers, json=json, params=params, timeout=timeout)
        if resp.status_code == 404:
            raise NotFound(f"{method} {url} returned 404")
        resp.raise_for_status()
        return resp.json() if resp.content else {}
    except httpx.TimeoutException as e:
        logger.error(f"Timeout calling {method} {url}")
        raise UpstreamError(f"Timeout calling payment processor: {url}") from e
    except httpx.HTTPStatusError as e:
        logger.error(f"{method} {url} failed with status {e.response.status_code}")
        raise UpstreamError(f"Payment processor returned {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error(f"Error calling {method} {url}: {e}")
        raise UpstreamError(f"Payment processor request failed: {e}") from e
