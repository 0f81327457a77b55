"""balena API client.

This module provides an async wrapper around the balena API (OData,
/v7 resource endpoints) for:
- Verifying the API token when a run starts
- Querying successful releases of a fleet by release tag
- Reading the raw version of a release
- Upserting release tags

The client is an explicit value created by BalenaClient.initialize() at
the invocation boundary and passed to every component that needs it.

Includes the same retry logic as github/client.py: transient failures
are retried with exponential backoff and full jitter.
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from deploy_to_balena.errors import DeployError
from deploy_to_balena.state.models import Release


logger = logging.getLogger(__name__)

API_VERSION = "v7"


class BalenaAPIError(DeployError):
    """Raised when a balena API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from the balena API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


def odata_string(value: str) -> str:
    """Quote a value as an OData string literal.

    Example:
        >>> odata_string("it's")
        "'it''s'"
    """
    return "'" + value.replace("'", "''") + "'"


def release_tags_filter(
    fleet: str,
    tags: Dict[str, str],
    exclude_tag_keys: Optional[List[str]] = None,
) -> str:
    """Build the $filter selecting successful fleet releases by tags.

    Args:
        fleet: Fleet slug.
        tags: Tag key/value pairs every release must carry.
        exclude_tag_keys: Tag keys a release must not carry.

    Returns:
        OData filter expression.
    """
    clauses = [
        f"belongs_to__application/any(a:a/slug eq {odata_string(fleet.lower())})",
        "status eq 'success'",
    ]
    for key, value in tags.items():
        clauses.append(
            "release_tag/any(rt:"
            f"(rt/tag_key eq {odata_string(key)}) and (rt/value eq {odata_string(value)}))"
        )
    for key in exclude_tag_keys or []:
        clauses.append(f"not(release_tag/any(rt:rt/tag_key eq {odata_string(key)}))")
    return " and ".join(clauses)


class BalenaClient:
    """Async balena API client with retry logic.

    Attributes:
        api_url: Base URL of the API, e.g. https://api.balena-cloud.com/.
        token: API key or session token.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> client = await BalenaClient.initialize("https://api.balena-cloud.com/", token)
        >>> try:
        ...     version = await client.get_release_version(42)
        ... finally:
        ...     await client.close()
    """

    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        api_url: str,
        token: str,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    async def initialize(
        cls,
        api_url: str,
        token: str,
        **kwargs: Any,
    ) -> "BalenaClient":
        """Create a client and verify its token against the API.

        Args:
            api_url: Base URL of the API.
            token: API key or session token.
            **kwargs: Passed through to the constructor.

        Returns:
            An authenticated BalenaClient.

        Raises:
            BalenaAPIError: If the token is rejected or the API is unreachable.
        """
        logger.info("Initializing balena API client", extra={"api_url": api_url})
        client = cls(api_url, token, **kwargs)
        try:
            await client.whoami()
        except BalenaAPIError:
            await client.close()
            raise
        return client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/json",
                    "User-Agent": "deploy-to-balena/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BalenaClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        exponential_delay = self.base_delay * (2 ** attempt)
        return random.uniform(0, min(exponential_delay, self.max_delay))

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Raises:
            BalenaAPIError: If the request fails after all retries.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "balena API request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                continue

            if (
                response.status_code in self.RETRYABLE_STATUS_CODES
                and attempt < self.max_retries
            ):
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from balena API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "balena API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise BalenaAPIError(
                    message=f"balena API error: {response.status_code} {error_body[:200]}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "balena API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise BalenaAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.api_url}{path}",
        )

    async def whoami(self) -> Dict[str, Any]:
        """Return the actor the token authenticates as.

        Raises:
            BalenaAPIError: If the token is rejected.
        """
        response = await self._request(method="GET", path="/actor/v1/whoami")
        return response.json()

    async def get_releases_by_tags(
        self,
        fleet: str,
        tags: Dict[str, str],
        exclude_tag_keys: Optional[List[str]] = None,
    ) -> List[Release]:
        """Find successful releases of a fleet carrying every given tag.

        Args:
            fleet: Fleet slug.
            tags: Tag key/value pairs to match.
            exclude_tag_keys: Tag keys matching releases must not carry.

        Returns:
            Matching releases ordered by creation time, newest first.

        Raises:
            BalenaAPIError: If the query fails.
        """
        params = {
            "$select": "id,is_final,created_at",
            "$orderby": "created_at desc",
            "$filter": release_tags_filter(fleet, tags, exclude_tag_keys),
        }

        logger.debug(
            "Querying releases by tags",
            extra={"fleet": fleet, "tags": tags, "exclude_tag_keys": exclude_tag_keys},
        )

        response = await self._request(
            method="GET", path=f"/{API_VERSION}/release", params=params
        )
        return [
            Release(
                id=item["id"],
                is_final=bool(item.get("is_final")),
                created_at=item.get("created_at"),
            )
            for item in response.json().get("d", [])
        ]

    async def get_release_version(self, release_id: int) -> str:
        """Read the raw version of a release.

        Raises:
            BalenaAPIError: If the release does not exist or the request fails.
        """
        path = f"/{API_VERSION}/release({release_id})"
        response = await self._request(
            method="GET", path=path, params={"$select": "raw_version"}
        )
        items = response.json().get("d", [])
        if not items:
            raise BalenaAPIError(
                message=f"Release {release_id} not found",
                status_code=response.status_code,
                request_url=str(response.url),
            )
        return items[0].get("raw_version") or ""

    async def set_release_tag(self, release_id: int, tag_key: str, value: str) -> None:
        """Set a tag on a release, replacing the value of an existing key.

        Raises:
            BalenaAPIError: If the tag could not be written.
        """
        path = f"/{API_VERSION}/release_tag"
        try:
            await self._request(
                method="POST",
                path=path,
                json_data={"release": release_id, "tag_key": tag_key, "value": value},
            )
        except BalenaAPIError as e:
            if e.status_code != 409:
                raise
            await self._request(
                method="PATCH",
                path=path,
                params={
                    "$filter": (
                        f"release eq {release_id} and tag_key eq {odata_string(tag_key)}"
                    )
                },
                json_data={"value": value},
            )

        logger.debug(
            "Release tag set",
            extra={"release_id": release_id, "tag_key": tag_key, "value": value},
        )
