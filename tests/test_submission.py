from __future__ import annotations

import pytest
import requests

from discoverycrawler.errors import SubmissionError
from discoverycrawler.models import ExtractedMetadata, SubmissionResult
from discoverycrawler.services.submission import SubmissionClient

METADATA = ExtractedMetadata(url="https://example.com/a", domain="example.com", title="A", sources={"title": "h1"})


def _client(web) -> SubmissionClient:
    return SubmissionClient("https://intake.example.com/submit", session=web, token="t0k3n", timeout=4)


@pytest.mark.parametrize(
    "status_code, json_data, expected",
    [
        (201, None, SubmissionResult.accepted),
        (202, {"status": "accepted"}, SubmissionResult.accepted),
        (200, {"status": "already_exists"}, SubmissionResult.already_exists),
        (409, None, SubmissionResult.already_exists),
        (400, None, SubmissionResult.rejected),
        (422, None, SubmissionResult.rejected),
    ],
)
def test_status_codes_map_to_results(web, dummy_response, status_code, json_data, expected) -> None:
    web.post_response = dummy_response(status_code=status_code, json_data=json_data)

    assert _client(web).submit("https://example.com/a", METADATA) == expected


def test_request_carries_metadata_and_token(web) -> None:
    _client(web).submit("https://example.com/a", METADATA)

    sent = web.posts[0]
    assert sent["headers"]["Authorization"] == "Bearer t0k3n"
    assert sent["timeout"] == 4
    assert sent["json"]["url"] == "https://example.com/a"
    assert sent["json"]["metadata"]["title"] == "A"
    assert "sources" not in sent["json"]["metadata"]
    assert sent["json"]["sources"] == {"title": "h1"}


def test_server_errors_and_transport_failures_raise(web, dummy_response) -> None:
    web.post_response = dummy_response(status_code=502)
    with pytest.raises(SubmissionError, match="HTTP 502"):
        _client(web).submit("https://example.com/a", METADATA)

    web.post_response = requests.ConnectionError("refused")
    with pytest.raises(SubmissionError, match="Could not reach"):
        _client(web).submit("https://example.com/a", METADATA)


def test_dry_run_accepts_without_network(web) -> None:
    client = SubmissionClient(None, session=web)

    assert client.dry_run
    assert client.submit("https://example.com/a", METADATA) == SubmissionResult.accepted
    assert web.posts == []
