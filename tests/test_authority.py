from __future__ import annotations

from typing import Any

import pytest
import requests

from fakes import make_config, release_hash
from ledgerctl.core.authority import AuthorityClient
from ledgerctl.core.config import AuthorityConfig
from ledgerctl.core.errors import ManifestRequestFailed
from ledgerctl.core.model import Challenge, ChallengeContext, DeviceIdentity

IDENTITY = DeviceIdentity(target_id=0x33100004, firmware_version="1.1.0", mcu_version="5.12")
CHALLENGE = Challenge(nonce=bytes.fromhex("0102030405060708"), context=ChallengeContext.INSTALL, serial=1)


class FakeResponse:
    def __init__(self, status_code: int, body: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._body = body
        self.text = text
        self.reason = "reason"

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeHTTP:
    def __init__(self, *outcomes: FakeResponse | Exception) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(http: FakeHTTP, *, token: str | None = None) -> tuple[AuthorityClient, list[float]]:
    base = make_config().authority
    config = AuthorityConfig(
        base_url=base.base_url,
        timeout_s=base.timeout_s,
        max_attempts=3,
        backoff_initial_s=0.5,
        backoff_max_s=1.0,
        token=token,
    )
    sleeps: list[float] = []
    return AuthorityClient(config, http=http, sleep=sleeps.append), sleeps


def _manifest_body() -> dict[str, Any]:
    return {
        "app": "Bitcoin Test",
        "version": "2.1.0",
        "hash": release_hash("Bitcoin Test", "2.1.0").upper(),
        "blocks": ["0102", "aabbcc"],
    }


def test_manifest_request_succeeds_after_transient_failures() -> None:
    http = FakeHTTP(
        requests.ConnectionError("reset"),
        FakeResponse(503),
        FakeResponse(200, _manifest_body()),
    )
    client, sleeps = _client(http)

    manifest = client.request_install_manifest(IDENTITY, "Bitcoin Test", "2.1.0", CHALLENGE)

    assert manifest.blocks == (b"\x01\x02", b"\xaa\xbb\xcc")
    assert manifest.hash == release_hash("Bitcoin Test", "2.1.0")
    assert len(http.calls) == 3
    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] <= 0.625
    assert 1.0 <= sleeps[1] <= 1.25

    method, url, kwargs = http.calls[-1]
    assert method == "POST"
    assert url == "https://authority.test/api/install"
    assert kwargs["json"]["challenge"] == "0102030405060708"
    assert kwargs["json"]["targetId"] == 0x33100004
    assert kwargs["timeout"] == 1.0


def test_exhausted_retries_raise_retryable_failure() -> None:
    http = FakeHTTP(requests.Timeout("slow"), FakeResponse(502), FakeResponse(500))
    client, sleeps = _client(http)

    with pytest.raises(ManifestRequestFailed) as exc:
        client.request_install_manifest(IDENTITY, "Bitcoin Test", "2.1.0", CHALLENGE)

    assert exc.value.retryable is True
    assert exc.value.attempts == 3
    assert len(sleeps) == 2


def test_refusal_is_terminal() -> None:
    http = FakeHTTP(FakeResponse(404, {"error": "unknown app for this firmware"}))
    client, sleeps = _client(http)

    with pytest.raises(ManifestRequestFailed, match="unknown app for this firmware") as exc:
        client.request_install_manifest(IDENTITY, "Bitcoin Test", "9.9.9", CHALLENGE)

    assert exc.value.retryable is False
    assert len(http.calls) == 1
    assert sleeps == []


def test_malformed_manifest_is_rejected() -> None:
    body = _manifest_body()
    body["blocks"] = ["not-hex"]
    client, _ = _client(FakeHTTP(FakeResponse(200, body)))

    with pytest.raises(ManifestRequestFailed, match="Malformed"):
        client.request_install_manifest(IDENTITY, "Bitcoin Test", "2.1.0", CHALLENGE)


def test_attestation_request_and_bearer_token() -> None:
    http = FakeHTTP(FakeResponse(200, {"attestation": "deadbeef"}))
    client, _ = _client(http, token="s3cret")
    challenge = Challenge(nonce=bytes(8), context=ChallengeContext.GENUINE_CHECK, serial=1)

    assert client.request_attestation(IDENTITY, challenge) == bytes.fromhex("deadbeef")
    _, url, kwargs = http.calls[0]
    assert url == "https://authority.test/api/genuine"
    assert kwargs["headers"]["Authorization"] == "Bearer s3cret"


def test_latest_release_lookup() -> None:
    app_hash = release_hash("Bitcoin", "2.2.1")
    http = FakeHTTP(
        FakeResponse(
            200,
            {"name": "Bitcoin", "version": "2.2.1", "hash": app_hash, "firmware": "nanos+/1.1.0/bitcoin/app_2.2.1"},
        )
    )
    client, _ = _client(http)

    release = client.latest_release(IDENTITY, "Bitcoin")

    assert release.version == "2.2.1"
    assert release.firmware == "nanos+/1.1.0/bitcoin/app_2.2.1"
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("GET", "https://authority.test/api/apps/latest")
    assert kwargs["params"]["name"] == "Bitcoin"


def test_non_json_success_body_is_terminal() -> None:
    client, _ = _client(FakeHTTP(FakeResponse(200, None, text="<html>")))
    with pytest.raises(ManifestRequestFailed, match="non-JSON"):
        client.request_attestation(IDENTITY, CHALLENGE)


def test_connection_dropped_mid_body_is_retried() -> None:
    http = FakeHTTP(
        requests.exceptions.ChunkedEncodingError("connection broken mid-body"),
        FakeResponse(200, {"attestation": "deadbeef"}),
    )
    client, sleeps = _client(http)

    assert client.request_attestation(IDENTITY, CHALLENGE) == bytes.fromhex("deadbeef")
    assert len(http.calls) == 2
    assert len(sleeps) == 1


def test_unsendable_request_is_terminal_authority_failure() -> None:
    http = FakeHTTP(requests.exceptions.TooManyRedirects("Exceeded 30 redirects."))
    client, sleeps = _client(http)

    with pytest.raises(ManifestRequestFailed, match="TooManyRedirects") as exc:
        client.request_install_manifest(IDENTITY, "Bitcoin Test", "2.1.0", CHALLENGE)

    assert exc.value.retryable is False
    assert isinstance(exc.value.__cause__, requests.exceptions.TooManyRedirects)
    assert sleeps == []
