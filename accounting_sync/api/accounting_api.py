"""
REST client for the accounting provider.

Provides a small interface over the provider's collection endpoints for:
- Listing records page by page
- Fetching, creating and updating single records
- Exponential backoff retry for network failures and 5xx responses

Creates carry an Idempotency-Key that stays the same across retries, so a
create whose response was lost is not applied twice by the provider.

Rate limiting (HTTP 429) is NOT retried here: the limit is shared by the
whole connection, so the caller backs off the entire batch instead.
"""

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import requests

from accounting_sync.auth.oauth import TokenExpiredError
from accounting_sync.config.settings import DEFAULT_TENANT_HEADER

# Header the provider uses to deduplicate repeated creates
IDEMPOTENCY_HEADER = "Idempotency-Key"

# Maximum number of records per page when listing
DEFAULT_PAGE_SIZE = 100

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 60.0  # seconds
DEFAULT_TIMEOUT = 30.0  # seconds

# Used when a 429 arrives without a usable Retry-After header
DEFAULT_RETRY_AFTER = 10.0

logger = logging.getLogger(__name__)


class AccountingAPIError(Exception):
    """Raised when an accounting API operation fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(AccountingAPIError):
    """HTTP 429. retry_after is the number of seconds to wait."""

    def __init__(self, message: str, retry_after: float = DEFAULT_RETRY_AFTER):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class NetworkTransientError(AccountingAPIError):
    """Connection failure, timeout, or 5xx that survived all retries."""

    pass


class ValidationError(AccountingAPIError):
    """The provider rejected the record; retrying will not help."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[list[str]] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.details = details or []


def parse_retry_after(
    value: Optional[str], now: Optional[datetime] = None
) -> Optional[float]:
    """
    Parse a Retry-After header (delta-seconds or HTTP-date) into seconds.

    Returns:
        Seconds to wait (never negative), or None if the header is missing
        or unparseable
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def extract_validation_messages(payload: Any) -> list[str]:
    """Collect provider validation messages from an error body."""
    messages: list[str] = []
    if not isinstance(payload, dict):
        return messages
    for element in payload.get("Elements") or []:
        for error in element.get("ValidationErrors") or []:
            message = error.get("Message")
            if message:
                messages.append(message)
    if not messages and payload.get("Message"):
        messages.append(str(payload["Message"]))
    return messages


class AccountingAPI:
    """
    Accounting provider REST wrapper.

    Every call takes the access token and tenant id explicitly; the client
    never stores a token between calls.

    Usage:
        api = AccountingAPI(settings.provider.api_base_url)
        page = api.list_records("Contacts", token, tenant_id, page=1)
        created = api.create_record("Contacts", {"Name": "Acme"}, token, tenant_id)
    """

    def __init__(
        self,
        base_url: str,
        tenant_header: str = DEFAULT_TENANT_HEADER,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the API wrapper.

        Args:
            base_url: Root of the accounting API, e.g. https://api.example.com/2.0
            tenant_header: Header carrying the tenant (organisation) id
            timeout: Per-request timeout in seconds
            page_size: Records requested per page when listing
            max_retries: Retries for transient failures
            initial_retry_delay: First backoff delay in seconds
            max_retry_delay: Backoff cap in seconds
            session: Optional requests session (tests inject a mock)
        """
        self.base_url = base_url.rstrip("/")
        self.tenant_header = tenant_header
        self.timeout = timeout
        self.page_size = page_size
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.session = session or requests.Session()
        self._sleep = sleep

    def _headers(self, access_token: str, tenant_id: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            self.tenant_header: tenant_id,
            "Accept": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        tenant_id: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        operation = f"{method} {path}"
        headers = self._headers(access_token, tenant_id)
        if idempotency_key is not None:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        def send() -> dict[str, Any]:
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json_body,
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise NetworkTransientError(f"{operation} failed: {e}") from e
            except requests.RequestException as e:
                raise AccountingAPIError(f"{operation} failed: {e}") from e
            return self._handle_response(operation, response)

        return self._retry_with_backoff(send, operation)

    def _handle_response(
        self, operation: str, response: requests.Response
    ) -> dict[str, Any]:
        status = response.status_code

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitedError(
                f"{operation} rate limited",
                retry_after=DEFAULT_RETRY_AFTER if retry_after is None else retry_after,
            )
        if status == 401:
            raise TokenExpiredError(f"{operation} rejected the access token (401)")
        if status >= 500:
            raise NetworkTransientError(
                f"{operation} server error ({status})", status_code=status
            )
        if status >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            messages = extract_validation_messages(body)
            detail = "; ".join(messages) if messages else response.text[:200]
            if status in (400, 404, 409, 422):
                raise ValidationError(
                    f"{operation} rejected ({status}): {detail}",
                    status_code=status,
                    details=messages,
                )
            raise AccountingAPIError(
                f"{operation} failed ({status}): {detail}", status_code=status
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkTransientError(f"{operation} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise AccountingAPIError(f"{operation} returned an unexpected body")
        return payload

    def _retry_with_backoff(
        self,
        operation: Callable[[], dict[str, Any]],
        operation_name: str = "API call",
    ) -> dict[str, Any]:
        """
        Execute an operation, retrying transient failures with backoff.

        Raises:
            NetworkTransientError: If retries are exhausted
            AccountingAPIError: For non-retryable failures (raised at once)
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries + 1):
            try:
                return operation()
            except NetworkTransientError as e:
                if attempt >= self.max_retries:
                    logger.error(f"{operation_name} failed after retries: {e}")
                    raise
                logger.warning(
                    f"{operation_name} transient failure, retrying in "
                    f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                )
                self._sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)

        raise NetworkTransientError(f"{operation_name} failed after all retries")

    # =========================================================================
    # Collection operations
    # =========================================================================

    def list_records(
        self,
        resource: str,
        access_token: str,
        tenant_id: str,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of a collection.

        Args:
            resource: Collection name, e.g. 'Contacts'
            page: 1-based page number

        Returns:
            The records on the page (fewer than page_size on the last page)
        """
        logger.debug(f"Listing {resource} page {page}")
        payload = self._request(
            "GET",
            resource,
            access_token,
            tenant_id,
            params={"page": page, "pageSize": self.page_size},
        )
        return list(payload.get(resource) or [])

    def get_record(
        self, resource: str, record_id: str, access_token: str, tenant_id: str
    ) -> dict[str, Any]:
        """
        Fetch a single record.

        Raises:
            ValidationError: If the record does not exist (404)
        """
        payload = self._request("GET", f"{resource}/{record_id}", access_token, tenant_id)
        return self._single(resource, payload)

    def create_record(
        self,
        resource: str,
        record: dict[str, Any],
        access_token: str,
        tenant_id: str,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a record and return it as stored by the provider.

        Transient failures are retried with the same idempotency key, so a
        create that reached the provider before the connection dropped is
        not created again.
        """
        payload = self._request(
            "PUT",
            resource,
            access_token,
            tenant_id,
            json_body={resource: [record]},
            idempotency_key=idempotency_key or str(uuid.uuid4()),
        )
        return self._single(resource, payload)

    def update_record(
        self,
        resource: str,
        record_id: str,
        record: dict[str, Any],
        access_token: str,
        tenant_id: str,
    ) -> dict[str, Any]:
        """Update a record and return it as stored by the provider."""
        payload = self._request(
            "POST",
            f"{resource}/{record_id}",
            access_token,
            tenant_id,
            json_body={resource: [record]},
        )
        return self._single(resource, payload)

    @staticmethod
    def _single(resource: str, payload: dict[str, Any]) -> dict[str, Any]:
        records = payload.get(resource) or []
        if not records:
            raise AccountingAPIError(f"{resource} response contained no record")
        return records[0]
