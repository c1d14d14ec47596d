import logging
import time as time_module

import requests

from errors import AuthError, FetchExhaustedError, TransientError, UpstreamStatusError

DEFAULT_MAX_RETRIES = 5
DEFAULT_TIMEOUT_SECONDS = 20
TRANSIENT_STATUS_CODES = frozenset({504})
AUTH_STATUS_CODES = frozenset({401, 403})
RETRYABLE_EXCEPTIONS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def backoff_seconds(attempt):
    """Delay before zero-based ``attempt``; the first attempt is not delayed."""
    if attempt < 1:
        return 0
    return 2 ** (attempt - 1)


class FetchClient:
    """HTTP client with bounded retry and exponential backoff.

    Network failures and gateway timeouts are retried up to ``max_retries``
    attempts in total. Authentication failures and other error statuses are
    raised on the first occurrence. The client does not look at payloads.
    """

    def __init__(
        self,
        max_retries=DEFAULT_MAX_RETRIES,
        timeout=DEFAULT_TIMEOUT_SECONDS,
        session=None,
        sleep=time_module.sleep,
        logger=None,
        transient_status_codes=TRANSIENT_STATUS_CODES,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep
        self.logger = logger or logging.getLogger("uvicorn.error")
        self.transient_status_codes = frozenset(transient_status_codes)

    def request(self, method, url, headers=None, params=None, data=None, json=None):
        last_error = None
        for attempt in range(self.max_retries):
            delay = backoff_seconds(attempt)
            if delay:
                self.logger.warning(
                    "Retrying %s %s in %ss (attempt %s/%s): %s",
                    method.upper(),
                    url,
                    delay,
                    attempt + 1,
                    self.max_retries,
                    last_error,
                )
                self.sleep(delay)
            self.logger.info("Requesting %s %s (attempt %s/%s)", method.upper(), url, attempt + 1, self.max_retries)
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    data=data,
                    json=json,
                    timeout=self.timeout,
                )
            except RETRYABLE_EXCEPTIONS as exc:
                last_error = exc
                continue

            status = response.status_code
            if status in self.transient_status_codes:
                last_error = TransientError(f"{url} answered {status}", status_code=status)
                response.close()
                continue
            if status in AUTH_STATUS_CODES:
                raise AuthError(f"{url} rejected credentials ({status})", status_code=status)
            if status >= 400:
                raise UpstreamStatusError(f"{url} answered {status}", status_code=status, body=response.text)
            return response

        raise FetchExhaustedError(
            f"{method.upper()} {url} failed after {self.max_retries} attempts: {last_error}",
            last_error=last_error,
            attempts=self.max_retries,
        )

    def get(self, url, **kwargs):
        return self.request("get", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("post", url, **kwargs)
