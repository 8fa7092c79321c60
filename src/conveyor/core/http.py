"""HTTP sessions for the GitHub and Telegram clients.

Transport errors and transient statuses are retried by urllib3's ``Retry``
policy mounted on the session, with exponential backoff and ``Retry-After``
honoured for 429 and 503.
"""

from typing import Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

RETRYABLE_STATUS_CODES = [429, 500, 502, 503, 504]
RETRYABLE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def build_session(
    max_attempts: int,
    backoff_factor: float,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Session:
    """Create a session that makes up to ``max_attempts`` attempts per request.

    Once the retries are spent the last response is returned as-is, so callers
    see the final status through ``raise_for_status``.
    """
    session = requests.Session()
    if headers:
        session.headers.update(headers)

    retry_strategy = Retry(
        total=max(0, max_attempts - 1),
        backoff_factor=backoff_factor,
        status_forcelist=RETRYABLE_STATUS_CODES,
        allowed_methods=RETRYABLE_METHODS,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session
