"""HTTP client for the CDR document API.

This module provides:
- DocumentApi: The operations the sync engine depends on
- DocumentApiClient: httpx implementation with OAuth2 client-credentials auth
- Tagged result types for upload, download, acknowledge and secret renewal

Remote calls never raise into the engine; every outcome is a result value.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from docsync.client.retry import NETWORK_EXCEPTIONS, retry_with_backoff
from docsync.core.config import DocSyncError

if TYPE_CHECKING:
    from docsync.core.config import ClientConfig, IdpCredentials, RetryTemplateConfig
    from docsync.core.types import Mode

logger = logging.getLogger(__name__)

CONNECTOR_ID_HEADER = "cdr-connector-id"
PROCESSING_MODE_HEADER = "cdr-processing-mode"
TRACE_ID_HEADER = "x-ms-request-id"
PULL_RESULT_ID_HEADER = "cdr-document-uuid"

# Refresh the access token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 60.0


class ApiError(DocSyncError):
    """Remote API call failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiError):
    """Access token could not be obtained."""


def new_trace_id() -> str:
    """Create a random trace id for log correlation and the trace header."""
    return uuid.uuid4().hex


# === Result types ===


@dataclass(frozen=True)
class UploadSuccess:
    """Document accepted by the server."""


@dataclass(frozen=True)
class UploadClientError:
    """Document rejected by the server (4xx); never retried."""

    code: int
    body: str


@dataclass(frozen=True)
class UploadServerError:
    """Server failed to process the document (5xx); retryable."""

    code: int
    body: str


@dataclass(frozen=True)
class UploadTransportError:
    """The request did not complete; retryable."""

    cause: Exception


UploadResult = UploadSuccess | UploadClientError | UploadServerError | UploadTransportError


@dataclass(frozen=True)
class DownloadSuccess:
    """A document was staged locally."""

    document_id: str
    file: Path


@dataclass(frozen=True)
class NoDocumentPending:
    """The connector's download queue is empty."""


@dataclass(frozen=True)
class AcknowledgeSuccess:
    """The server removed the document from the download queue."""


@dataclass(frozen=True)
class DownloadError:
    """A download or acknowledge call failed."""

    cause: str
    code: int | None = None


DownloadResult = DownloadSuccess | NoDocumentPending | DownloadError
AcknowledgeResult = AcknowledgeSuccess | DownloadError


@dataclass(frozen=True)
class RenewSecretSuccess:
    """A new client secret was issued."""

    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"RenewSecretSuccess(client_id={self.client_id!r}, client_secret='********')"


@dataclass(frozen=True)
class RenewSecretError:
    """The client secret could not be renewed."""

    cause: str
    code: int | None = None


RenewSecretResult = RenewSecretSuccess | RenewSecretError


class DocumentApi(Protocol):
    """Remote operations consumed by the sync engine."""

    def download_next(self, connector_id: str, mode: Mode, trace_id: str) -> DownloadResult: ...

    def acknowledge(
        self, connector_id: str, mode: Mode, document_id: str, trace_id: str
    ) -> AcknowledgeResult: ...

    def upload(
        self, connector_id: str, mode: Mode, content_type: str, file: Path, trace_id: str
    ) -> UploadResult: ...

    def renew_secret(self, trace_id: str) -> RenewSecretResult: ...


class _RetryableStatus(ApiError):
    """Server error status that is worth retrying."""


def _retrying(func: Callable[[], Any], retry: RetryTemplateConfig) -> Any:
    return retry_with_backoff(
        func,
        max_retries=retry.retries,
        initial_backoff=retry.initial_delay.total_seconds(),
        max_backoff=retry.max_delay.total_seconds(),
        backoff_multiplier=retry.multiplier,
        retryable_exceptions=(httpx.TransportError, _RetryableStatus, *NETWORK_EXCEPTIONS),
    )


class TokenProvider:
    """Obtains and caches OAuth2 access tokens (client-credentials grant)."""

    def __init__(
        self,
        client: httpx.Client,
        token_url: str,
        credentials: IdpCredentials,
        retry: RetryTemplateConfig,
    ) -> None:
        """Initialize the token provider.

        Args:
            client: HTTP client used for the token request.
            token_url: Token endpoint of the identity provider. An empty URL
                disables authentication.
            credentials: Client id, secret and scope.
            retry: Backoff used for transport and server errors.
        """
        self._client = client
        self._token_url = token_url
        self._credentials = credentials
        self._retry = retry
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        """Drop the cached token."""
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def get_token(self) -> str:
        """Get a valid access token, requesting a new one if needed.

        Returns:
            Access token, or an empty string if authentication is disabled.

        Raises:
            AuthenticationError: If no token could be obtained.
        """
        if not self._token_url:
            return ""
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            try:
                self._token, lifetime = _retrying(self._request_token, self._retry)
            except (httpx.HTTPError, ApiError, KeyError, ValueError, *NETWORK_EXCEPTIONS) as e:
                raise AuthenticationError(f"Failed to obtain access token: {e}") from e
            self._expires_at = time.monotonic() + max(lifetime - TOKEN_EXPIRY_MARGIN, 0.0)
            return self._token

    def _request_token(self) -> tuple[str, float]:
        response = self._client.post(
            self._token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret.get_secret_value(),
                "scope": self._credentials.scope,
            },
        )
        if response.status_code >= 500:
            raise _RetryableStatus("Identity provider error", response.status_code)
        if response.status_code >= 400:
            raise AuthenticationError("Token request rejected", response.status_code)
        data = response.json()
        return data["access_token"], float(data.get("expires_in", 3600))


class DocumentApiClient:
    """HTTP client for the CDR document and credential APIs."""

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Agent configuration (endpoints, credentials, timeouts).
            transport: Optional httpx transport, mainly for tests.
        """
        self._config = config
        self._client = httpx.Client(
            timeout=httpx.Timeout(
                config.read_timeout.total_seconds(),
                connect=config.connection_timeout.total_seconds(),
            ),
            transport=transport,
        )
        self._tokens = TokenProvider(
            self._client,
            config.idp_endpoint,
            config.idp_credentials,
            config.retry_template,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> DocumentApiClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _headers(
        self,
        trace_id: str,
        connector_id: str | None = None,
        mode: Mode | None = None,
    ) -> dict[str, str]:
        headers = {TRACE_ID_HEADER: trace_id}
        if connector_id is not None:
            headers[CONNECTOR_ID_HEADER] = connector_id
        if mode is not None:
            headers[PROCESSING_MODE_HEADER] = mode.value
        token = self._tokens.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # === Upload ===

    def upload(
        self, connector_id: str, mode: Mode, content_type: str, file: Path, trace_id: str
    ) -> UploadResult:
        """Upload a document.

        Args:
            connector_id: Connector the document belongs to.
            mode: Processing mode.
            content_type: Content type of the document.
            file: File to send.
            trace_id: Trace id for the request header.

        Returns:
            Success, client error (4xx), server error (other) or transport error.
        """
        logger.debug("Upload '%s' start", file)
        try:
            headers = self._headers(trace_id, connector_id, mode)
            headers["Content-Type"] = content_type
            response = self._client.post(
                self._config.cdr_api.url,
                content=file.read_bytes(),
                headers=headers,
            )
        except (httpx.HTTPError, ApiError, OSError) as e:
            logger.error("Upload '%s' failed: %s", file, e)
            return UploadTransportError(e)

        if response.is_success:
            logger.debug("Upload '%s' done", file)
            return UploadSuccess()
        if 400 <= response.status_code < 500:
            logger.info("Upload '%s' encountered client error: %d", file, response.status_code)
            return UploadClientError(response.status_code, response.text or "no response body")
        logger.info("Upload '%s' encountered server error: %d", file, response.status_code)
        return UploadServerError(response.status_code, response.text or "no response body")

    # === Download ===

    def download_next(self, connector_id: str, mode: Mode, trace_id: str) -> DownloadResult:
        """Pull the next pending document into the local folder.

        The document is written to ``{local-folder}/{document-id}.tmp``.

        Args:
            connector_id: Connector to pull for.
            mode: Processing mode.
            trace_id: Trace id for the request header.

        Returns:
            Staged document, no document pending (204), or an error.
        """
        file: Path | None = None
        try:
            with self._client.stream(
                "GET",
                self._config.cdr_api.url,
                params={"limit": 1},
                headers=self._headers(trace_id, connector_id, mode),
            ) as response:
                if response.status_code == 204:
                    return NoDocumentPending()
                if not response.is_success:
                    response.read()
                    return DownloadError(
                        f"Download failed: {response.text or 'no response body'}",
                        response.status_code,
                    )
                document_id = response.headers.get(PULL_RESULT_ID_HEADER, "")
                if not document_id or "/" in document_id or "\\" in document_id:
                    return DownloadError(f"Invalid pull result id: {document_id!r}")
                file = self._config.local_folder / f"{document_id}.tmp"
                with file.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
        except (httpx.HTTPError, ApiError, OSError) as e:
            if file is not None:
                file.unlink(missing_ok=True)
            return DownloadError(f"Download failed: {e}")

        logger.debug("Downloaded document '%s' to '%s'", document_id, file)
        return DownloadSuccess(document_id, file)

    def acknowledge(
        self, connector_id: str, mode: Mode, document_id: str, trace_id: str
    ) -> AcknowledgeResult:
        """Confirm a download so the server removes the document from the queue.

        Args:
            connector_id: Connector the document was pulled for.
            mode: Processing mode.
            document_id: Id returned by download_next.
            trace_id: Trace id for the request header.

        Returns:
            AcknowledgeSuccess or DownloadError.
        """
        try:
            response = self._client.delete(
                f"{self._config.cdr_api.url}/{document_id}",
                headers=self._headers(trace_id, connector_id, mode),
            )
        except (httpx.HTTPError, ApiError) as e:
            return DownloadError(f"Acknowledge failed: {e}")

        if response.is_success:
            return AcknowledgeSuccess()
        return DownloadError(
            f"Acknowledge failed: {response.text or 'no response body'}",
            response.status_code,
        )

    # === Credentials ===

    def renew_secret(self, trace_id: str) -> RenewSecretResult:
        """Ask the credential API to issue a new client secret.

        Args:
            trace_id: Trace id for the request header.

        Returns:
            The new secret, or an error.
        """
        client_id = self._config.idp_credentials.client_id
        url = f"{self._config.credential_api.url}/{client_id}"

        def call() -> httpx.Response:
            response = self._client.patch(url, headers=self._headers(trace_id))
            if response.status_code >= 500:
                raise _RetryableStatus(f"Server error: {response.text}", response.status_code)
            return response

        logger.debug("Renewing client secret")
        try:
            response = _retrying(call, self._config.retry_template)
        except (httpx.HTTPError, ApiError, *NETWORK_EXCEPTIONS) as e:
            return RenewSecretError(
                f"Renewing client secret failed: {e}", getattr(e, "status_code", None)
            )

        if not response.is_success:
            logger.warning(
                "Renewing client secret encountered client error; status code: %d",
                response.status_code,
            )
            return RenewSecretError(response.text or "no response body", response.status_code)

        media_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not (media_type == "application/json" or media_type.endswith("+json")):
            return RenewSecretError(f"Credential renewal response is not JSON: '{media_type}'")

        try:
            data = response.json()
        except ValueError as e:
            return RenewSecretError(f"Credential renewal response is not valid JSON: {e}")
        if not isinstance(data, dict):
            return RenewSecretError(
                f"Credential renewal response is not a JSON object: '{type(data).__name__}'"
            )
        for warning in data.get("warnings") or []:
            logger.warning("Client secret renewal server-side warning: '%s'", warning)
        if data.get("clientId") != client_id:
            return RenewSecretError(
                "Client id in credential renewal response does not match local client id; "
                f"local: '{client_id}', received: '{data.get('clientId')}'"
            )
        secret = data.get("clientSecret")
        if not isinstance(secret, str) or not secret:
            return RenewSecretError("Credential renewal response contains no client secret")

        logger.debug("Renewing client secret done")
        return RenewSecretSuccess(client_id=client_id, client_secret=secret)
