"""Client for the downstream content-intake service."""

from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from discoverycrawler.config import CrawlerSettings
from discoverycrawler.errors import SubmissionError
from discoverycrawler.models import ExtractedMetadata, SubmissionResult

__all__ = ["SubmissionClient"]

logger = logging.getLogger(__name__)

ACCEPTED_STATUSES = {200, 201, 202}


class SubmissionClient:
    """POSTs discovered URLs with their metadata to the intake endpoint.

    ``409 Conflict`` means the intake service already knows the URL; any other
    4xx is a rejection. 5xx responses and transport failures raise
    :class:`SubmissionError`. Without an endpoint the client runs in dry-run
    mode and accepts everything locally.
    """

    def __init__(
        self,
        endpoint: str | None,
        *,
        session: requests.Session | None = None,
        token: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._endpoint = endpoint
        self._session = session or requests.Session()
        self._token = token
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: CrawlerSettings, session: requests.Session | None = None) -> "SubmissionClient":
        return cls(
            settings.submission_url,
            session=session,
            token=settings.submission_token,
            timeout=settings.submission_timeout,
        )

    @property
    def dry_run(self) -> bool:
        return not self._endpoint

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @staticmethod
    def _payload(url: str, metadata: ExtractedMetadata) -> Dict[str, Any]:
        return {"url": url, "metadata": metadata.model_dump(mode="json", exclude={"sources"}), "sources": metadata.sources}

    def submit(self, url: str, metadata: ExtractedMetadata) -> SubmissionResult:
        if self.dry_run:
            logger.info("Dry run: would submit %s (%s)", url, metadata.title or "untitled")
            return SubmissionResult.accepted

        try:
            response = self._session.post(
                self._endpoint,
                json=self._payload(url, metadata),
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise SubmissionError(f"Could not reach intake service for {url}: {exc}") from exc

        status = response.status_code
        if status in ACCEPTED_STATUSES:
            return self._result_from_body(response)
        if status == 409:
            return SubmissionResult.already_exists
        if 400 <= status < 500:
            logger.info("Intake service rejected %s with HTTP %s", url, status)
            return SubmissionResult.rejected
        raise SubmissionError(f"Intake service answered HTTP {status} for {url}")

    @staticmethod
    def _result_from_body(response: requests.Response) -> SubmissionResult:
        """A 2xx body may still say the URL was a duplicate or was rejected."""

        try:
            body = response.json()
        except ValueError:
            return SubmissionResult.accepted
        status = body.get("status") if isinstance(body, dict) else None
        try:
            return SubmissionResult(status) if status else SubmissionResult.accepted
        except ValueError:
            return SubmissionResult.accepted
