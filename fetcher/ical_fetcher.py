"""HTTP fetcher for external iCal feeds."""
import logging
import time

import requests

logger = logging.getLogger(__name__)


class FeedFetchError(Exception):
    """Raised when a feed cannot be downloaded."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ICalFeedFetcher:
    """Downloads calendar feeds with a bounded timeout and retries."""

    USER_AGENT = 'apartment-calendar-sync/1.0'

    def __init__(self, timeout: int = 20, max_retries: int = 2, base_delay: float = 1):
        """
        Initialize the feed fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 20)
            max_retries: Number of attempts per feed (default: 2)
            base_delay: First backoff delay in seconds (default: 1)
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

    def fetch(self, url: str) -> str:
        """
        Fetch a feed body with retry logic.

        Feed URLs frequently embed provider secrets, so they are never
        logged or included in error messages.

        Args:
            url: Feed URL

        Returns:
            Response body decoded as text

        Raises:
            FeedFetchError: If the feed cannot be downloaded or the final
                response is not a 2xx
        """
        for attempt in range(self.max_retries):
            try:
                response = requests.get(
                    url,
                    timeout=self.timeout,
                    headers={'User-Agent': self.USER_AGENT}
                )
                response.raise_for_status()

            except requests.RequestException as e:
                message = self._describe_error(e)
                if self._is_retryable(e) and attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Feed request failed (attempt {attempt + 1}/{self.max_retries}): "
                        f"{message}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                    continue

                logger.warning(
                    f"Feed request failed after {attempt + 1} attempt(s): {message}"
                )
                raise FeedFetchError(message) from e

            # raise_for_status lets 1xx/3xx through, e.g. 304 with an empty body
            if not 200 <= response.status_code < 300:
                logger.warning(f"Feed request returned HTTP {response.status_code}")
                raise FeedFetchError(f"HTTP {response.status_code}")

            return response.content.decode('utf-8', errors='replace')

    @staticmethod
    def _is_retryable(error: requests.RequestException) -> bool:
        """Only server errors, timeouts and connection failures are retried."""
        if isinstance(error, requests.HTTPError):
            return error.response is not None and error.response.status_code >= 500
        return isinstance(error, (requests.Timeout, requests.ConnectionError))

    def _describe_error(self, error: requests.RequestException) -> str:
        """
        Convert a requests exception into a short message for the host.

        Args:
            error: Exception raised by requests

        Returns:
            Human readable message without the feed URL
        """
        if isinstance(error, requests.HTTPError) and error.response is not None:
            return f"HTTP {error.response.status_code}"
        if isinstance(error, requests.Timeout):
            return f"Request timed out after {self.timeout}s"
        if isinstance(error, requests.ConnectionError):
            return 'Connection failed'
        return f"Request failed ({type(error).__name__})"
