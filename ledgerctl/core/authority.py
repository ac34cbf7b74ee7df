"""Client for the remote provisioning authority.

The authority signs genuine-check attestations and install manifests bound to
a device identity and a device challenge. Transient network failures are
retried here with bounded exponential backoff; refusals are terminal.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import Any

import requests
from jsonschema import ValidationError

from ledgerctl.core.config import AuthorityConfig, load_schema_validator
from ledgerctl.core.errors import ManifestRequestFailed
from ledgerctl.core.model import AppRelease, Challenge, DeviceIdentity, Manifest

USER_AGENT = "ledgerctl/0.1.0"
_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})
_RETRYABLE_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)
LOGGER = logging.getLogger(__name__)


def _identity_params(identity: DeviceIdentity) -> dict[str, Any]:
    return {
        "targetId": identity.target_id,
        "firmware": identity.firmware_version,
        "mcu": identity.mcu_version,
    }


def _refusal_reason(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()[:200] or response.reason or "no reason given"
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if isinstance(body.get(key), str):
                return body[key]
    return str(body)[:200]


class AuthorityClient:
    def __init__(
        self,
        config: AuthorityConfig,
        *,
        http: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._http = http or requests.Session()
        self._sleep = sleep

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _backoff(self, attempt: int) -> float:
        delay = min(self.config.backoff_initial_s * (2 ** (attempt - 1)), self.config.backoff_max_s)
        return delay + random.uniform(0, delay * 0.25)

    def _request(self, method: str, path: str, what: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.config.base_url}{path}"
        attempts = self.config.max_attempts
        last_problem = "no attempt made"

        for attempt in range(1, attempts + 1):
            try:
                response = self._http.request(
                    method,
                    url,
                    headers=self._headers(),
                    timeout=self.config.timeout_s,
                    **kwargs,
                )
            except _RETRYABLE_ERRORS as exc:
                last_problem = f"{type(exc).__name__}: {exc}"
            except requests.RequestException as exc:
                raise ManifestRequestFailed(
                    f"Authority {what} could not be sent: {type(exc).__name__}: {exc}",
                    attempts=attempt,
                ) from exc
            else:
                if response.status_code in _RETRYABLE_STATUS:
                    last_problem = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise ManifestRequestFailed(
                        f"Authority refused {what} (HTTP {response.status_code}): "
                        f"{_refusal_reason(response)}",
                        attempts=attempt,
                    )
                else:
                    try:
                        body = response.json()
                    except ValueError as exc:
                        raise ManifestRequestFailed(
                            f"Authority returned a non-JSON body for {what}", attempts=attempt
                        ) from exc
                    if not isinstance(body, dict):
                        raise ManifestRequestFailed(
                            f"Authority returned an unexpected body for {what}", attempts=attempt
                        )
                    return body

            if attempt < attempts:
                delay = self._backoff(attempt)
                LOGGER.warning(
                    "Authority %s attempt %d/%d failed (%s); retrying in %.2fs",
                    what,
                    attempt,
                    attempts,
                    last_problem,
                    delay,
                )
                self._sleep(delay)

        raise ManifestRequestFailed(
            f"Authority {what} failed after {attempts} attempts: {last_problem}",
            retryable=True,
            attempts=attempts,
        )

    def _validated(self, body: dict[str, Any], schema: str, what: str) -> dict[str, Any]:
        try:
            load_schema_validator(schema).validate(body)
        except ValidationError as exc:
            raise ManifestRequestFailed(f"Malformed {what} from authority: {exc.message}") from exc
        return body

    def latest_release(self, identity: DeviceIdentity, app_name: str) -> AppRelease:
        body = self._request(
            "GET",
            "/apps/latest",
            "app release lookup",
            params={**_identity_params(identity), "name": app_name},
        )
        body = self._validated(body, "release", "app release")
        return AppRelease(
            name=body["name"],
            version=body["version"],
            hash=body["hash"].lower(),
            firmware=body.get("firmware", ""),
        )

    def request_attestation(self, identity: DeviceIdentity, challenge: Challenge) -> bytes:
        body = self._request(
            "POST",
            "/genuine",
            "attestation request",
            json={**_identity_params(identity), "challenge": challenge.nonce.hex()},
        )
        body = self._validated(body, "attestation", "attestation")
        return bytes.fromhex(body["attestation"])

    def request_install_manifest(
        self,
        identity: DeviceIdentity,
        app_name: str,
        version: str,
        challenge: Challenge,
    ) -> Manifest:
        body = self._request(
            "POST",
            "/install",
            "install manifest request",
            json={
                **_identity_params(identity),
                "app": app_name,
                "version": version,
                "challenge": challenge.nonce.hex(),
            },
        )
        body = self._validated(body, "manifest", "install manifest")
        return Manifest(
            app_name=body["app"],
            version=body["version"],
            hash=body["hash"].lower(),
            blocks=tuple(bytes.fromhex(block) for block in body["blocks"]),
        )
