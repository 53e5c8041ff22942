"""
Instrumented HTTP helpers for external services.
"""

import time
import logging
from typing import Any, Dict, Optional

import requests

from parcel_locator.config import config
from parcel_locator.core.metrics import track_external_api_call, api_errors

logger = logging.getLogger(__name__)

USER_AGENT = "parcel-locator/1.0"

_SESSION = requests.Session()
_SESSION.headers.update({"User-Agent": USER_AGENT})


def get_session() -> requests.Session:
    return _SESSION


def timed_get(service: str, endpoint: str, url: str, params: Optional[Dict[str, Any]] = None,
              timeout: Optional[float] = None) -> requests.Response:
    """
    GET ``url`` and record call count and latency under ``service``/``endpoint``.

    Raises ``requests.RequestException`` on transport errors and HTTP error statuses.
    """
    start_time = time.time()
    try:
        response = get_session().get(url, params=params, timeout=timeout or config.REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.exceptions.Timeout:
        track_external_api_call(service, endpoint, 'timeout', time.time() - start_time)
        api_errors.labels(service=service, error_type='timeout').inc()
        raise
    except requests.RequestException as e:
        track_external_api_call(service, endpoint, 'error', time.time() - start_time)
        api_errors.labels(service=service, error_type=type(e).__name__).inc()
        raise

    track_external_api_call(service, endpoint, 'success', time.time() - start_time)
    return response


def get_json(service: str, endpoint: str, url: str, params: Optional[Dict[str, Any]] = None,
             timeout: Optional[float] = None) -> Any:
    """GET and decode a JSON body. A body that is not JSON raises ``ValueError``."""
    response = timed_get(service, endpoint, url, params=params, timeout=timeout)
    return response.json()
