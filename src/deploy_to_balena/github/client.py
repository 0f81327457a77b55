"""GitHub API client for check runs and git references.

This module provides an async wrapper around the GitHub API for:
- Listing check runs on a commit (versionbot readiness, release bindings)
- Updating the output of a check run (check-run release store)
- Creating git tag references for final releases

Includes rate limiting and retry logic for API resilience. Retries cover
transient transport failures only; once exhausted the error propagates
to the lifecycle, which does not retry.

Source:
- github/models.py (CheckRun, GitReference)
- config.py (github_token, GITHUB_API_URL)
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from deploy_to_balena.errors import DeployError
from deploy_to_balena.github.models import CheckRun, GitReference


logger = logging.getLogger(__name__)

REFERENCE_EXISTS_MESSAGE = "Reference already exists"

CHECK_RUNS_PAGE_SIZE = 100


class GitHubAPIError(DeployError):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
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


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class ReferenceExistsError(GitHubAPIError):
    """Raised when creating a git reference that already exists."""


class GitHubClient:
    """Async GitHub API client with rate limiting and retry logic.

    Implements:
    - Automatic retry with exponential backoff for transient failures
    - Rate limit handling by respecting X-RateLimit-* headers
    - Support for both github.com and GitHub Enterprise Server

    Attributes:
        token: GitHub API token (GITHUB_TOKEN or a PAT).
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     runs = await client.list_check_runs("owner", "repo", "abc123")
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "deploy-to-balena/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff delay with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _raise_rate_limit(self, response: httpx.Response) -> None:
        """Raise RateLimitError with the reset information of a response.

        Raises:
            RateLimitError: Always.
        """
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": self._parse_int_header(response.headers, "x-ratelimit-limit"),
            },
        )

        raise RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH).
            path: API path (e.g., /repos/owner/repo/git/refs).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.

        Returns:
            The HTTP response from GitHub.

        Raises:
            GitHubAPIError: If the request fails after all retries.
            RateLimitError: If rate limit is exceeded.
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

                if response.status_code == 403:
                    remaining = self._parse_int_header(
                        response.headers, "x-ratelimit-remaining"
                    )
                    if remaining == 0:
                        self._raise_rate_limit(response)

                if (
                    response.status_code in self.RETRYABLE_STATUS_CODES
                    and attempt < self.max_retries
                ):
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Retryable error from GitHub API",
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

                if response.status_code == 429:
                    self._raise_rate_limit(response)

                if response.status_code >= 400:
                    error_body = response.text
                    logger.error(
                        "GitHub API error",
                        extra={
                            "status_code": response.status_code,
                            "path": path,
                            "method": method,
                            "response_body": error_body[:500],
                        },
                    )
                    raise GitHubAPIError(
                        message=f"GitHub API error: {response.status_code} {error_body[:200]}",
                        status_code=response.status_code,
                        response_body=error_body,
                        request_url=str(response.url),
                    )

                return response

            except GitHubAPIError:
                raise
            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request timeout, retrying",
                        extra={
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
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

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    async def list_check_runs(
        self,
        owner: str,
        repo: str,
        ref: str,
        check_name: Optional[str] = None,
    ) -> List[CheckRun]:
        """List every check run reported on a commit, re-runs included.

        Superseded runs are requested with filter=all and every page is
        followed.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            ref: Commit sha, branch or tag name.
            check_name: Only return check runs with this name.

        Returns:
            Check runs on the commit, newest first as returned by GitHub.

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/commits/{ref}/check-runs"
        params: Dict[str, Any] = {"per_page": CHECK_RUNS_PAGE_SIZE, "filter": "all"}
        if check_name:
            params["check_name"] = check_name

        logger.debug(
            "Listing check runs",
            extra={"owner": owner, "repo": repo, "ref": ref, "check_name": check_name},
        )

        check_runs: List[CheckRun] = []
        page = 1
        while True:
            response = await self._request(
                method="GET", path=path, params={**params, "page": page}
            )
            data = response.json()
            items = data.get("check_runs", [])
            check_runs.extend(CheckRun.from_api(item) for item in items)
            total = data.get("total_count", len(check_runs))
            if len(items) < CHECK_RUNS_PAGE_SIZE or len(check_runs) >= total:
                return check_runs
            page += 1

    async def update_check_run_output(
        self,
        owner: str,
        repo: str,
        check_run_id: int,
        title: str,
        summary: str,
        text: str,
    ) -> None:
        """Replace the output of a check run.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            check_run_id: Check run to update.
            title: Output title.
            summary: Output summary (markdown).
            text: Output text (markdown).

        Raises:
            GitHubAPIError: If the request fails.
        """
        path = f"/repos/{owner}/{repo}/check-runs/{check_run_id}"

        logger.info(
            "Updating check run output",
            extra={"owner": owner, "repo": repo, "check_run_id": check_run_id},
        )

        await self._request(
            method="PATCH",
            path=path,
            json_data={"output": {"title": title, "summary": summary, "text": text}},
        )

    async def create_ref(
        self,
        owner: str,
        repo: str,
        ref: str,
        sha: str,
    ) -> GitReference:
        """Create a git reference.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            ref: Fully qualified ref, e.g. refs/tags/v1.2.3.
            sha: Commit the reference points at.

        Returns:
            The created reference.

        Raises:
            ReferenceExistsError: If the reference already exists.
            GitHubAPIError: If the request fails for any other reason.
        """
        path = f"/repos/{owner}/{repo}/git/refs"

        logger.info(
            "Creating git reference",
            extra={"owner": owner, "repo": repo, "ref": ref, "sha": sha},
        )

        try:
            response = await self._request(
                method="POST",
                path=path,
                json_data={"ref": ref, "sha": sha},
            )
        except GitHubAPIError as e:
            if e.status_code == 422 and REFERENCE_EXISTS_MESSAGE in (e.response_body or ""):
                raise ReferenceExistsError(
                    message=REFERENCE_EXISTS_MESSAGE,
                    status_code=e.status_code,
                    response_body=e.response_body,
                    request_url=e.request_url,
                ) from e
            raise

        data = response.json()
        return GitReference(
            ref=data.get("ref", ref),
            sha=(data.get("object") or {}).get("sha", sha),
            url=data.get("url", ""),
        )

    async def create_tag(
        self,
        owner: str,
        repo: str,
        tag_name: str,
        sha: str,
    ) -> Optional[str]:
        """Create a lightweight tag at a commit.

        An existing tag of the same name is not an error: re-running the
        same final build leaves the tag as it is.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            tag_name: Tag name, e.g. v1.2.3.
            sha: Commit to tag.

        Returns:
            API URL of the created reference, or None if it already existed.

        Raises:
            GitHubAPIError: If the reference could not be created.
        """
        try:
            reference = await self.create_ref(owner, repo, f"refs/tags/{tag_name}", sha)
        except ReferenceExistsError:
            logger.info(
                "Git reference already exists.",
                extra={"owner": owner, "repo": repo, "tag": tag_name},
            )
            return None
        return reference.url
