"""Typed dashboard commands on top of a transport session."""

from __future__ import annotations

import logging

from ledgerctl.core.errors import AttestationFailed, LedgerctlError, ProtocolError
from ledgerctl.core.model import (
    AppInfo,
    Challenge,
    ChallengeContext,
    Command,
    DeviceHandle,
    DeviceInfo,
    MAX_APDU_DATA,
    Response,
)
from ledgerctl.core.session import TransportSession
from ledgerctl.core.status import GENUINE_CHECK_OVERRIDES, classify

CLA = 0xE0
INS_GET_VERSION = 0x01
INS_DELETE_APP = 0x0C
INS_GET_CHALLENGE = 0x50
INS_GENUINE_CHECK = 0x51
INS_LOAD_BLOCK = 0x52
INS_OPEN_APP = 0xD8
INS_LIST_APPS = 0xDE
INS_LIST_APPS_NEXT = 0xDF

CHALLENGE_SIZE = 8
HASH_SIZE = 32
APP_LIST_FORMAT = 0x01
MAX_LIST_PAGES = 64
LOGGER = logging.getLogger(__name__)


class _Reader:
    def __init__(self, data: bytes, what: str) -> None:
        self._data = data
        self._offset = 0
        self._what = what

    @property
    def exhausted(self) -> bool:
        return self._offset >= len(self._data)

    def take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise ProtocolError(f"truncated {self._what}: needed {size} bytes at offset {self._offset}")
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def byte(self) -> int:
        return self.take(1)[0]

    def prefixed(self) -> bytes:
        return self.take(self.byte())

    def text(self) -> str:
        raw = self.prefixed()
        try:
            return raw.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"non-ascii string in {self._what}") from exc


def _encode_name(name: str) -> bytes:
    try:
        return name.encode("ascii")
    except UnicodeEncodeError as exc:
        raise ValueError(f"application name must be ascii: {name!r}") from exc


class DeviceCommands:
    """Request/response operations with centralized status-word classification.

    The device expects the most recent challenge in the next authorized step,
    so this object tracks which challenge is outstanding and rejects stale ones
    before they are sent.
    """

    def __init__(
        self,
        session: TransportSession,
        handle: DeviceHandle,
        *,
        timeout_s: float = 5.0,
        confirm_timeout_s: float = 120.0,
    ) -> None:
        self.session = session
        self.handle = handle
        self.timeout_s = timeout_s
        self.confirm_timeout_s = confirm_timeout_s
        self._outstanding: Challenge | None = None
        self._serial = 0
        self._loading = False

    def _send(self, ins: int, *, p1: int = 0, data: bytes = b"", confirm: bool = False) -> Response:
        command = Command(cla=CLA, ins=ins, p1=p1, data=data)
        timeout_s = self.confirm_timeout_s if confirm else self.timeout_s
        return self.session.send(self.handle, command, timeout_s=timeout_s)

    def get_info(self) -> DeviceInfo:
        self._loading = False
        response = classify(self._send(INS_GET_VERSION), "get version")
        reader = _Reader(response.data, "version response")
        target_id = int.from_bytes(reader.take(4), "big")
        firmware_version = reader.text()
        flags = int.from_bytes(reader.prefixed(), "big")
        mcu_version = reader.text().rstrip("\x00")

        info = DeviceInfo(
            target_id=target_id,
            firmware_version=firmware_version,
            mcu_version=mcu_version,
            flags=flags,
            apps=tuple(self._list_apps()),
        )
        self.handle = self.session.describe(self.handle, info)
        LOGGER.debug("Device info: %s", info)
        return info

    def _list_apps(self) -> list[AppInfo]:
        apps: list[AppInfo] = []
        ins = INS_LIST_APPS
        for _ in range(MAX_LIST_PAGES):
            response = classify(self._send(ins, confirm=True), "list apps")
            if not response.data:
                return apps
            reader = _Reader(response.data, "app list")
            if reader.byte() != APP_LIST_FORMAT:
                raise ProtocolError("unsupported app list format")
            while not reader.exhausted:
                entry = _Reader(reader.prefixed(), "app entry")
                flags = int.from_bytes(entry.take(2), "big")
                entry.take(HASH_SIZE)  # code hash
                app_hash = entry.take(HASH_SIZE).hex()
                name = entry.text()
                version = entry.text()
                apps.append(AppInfo(name=name, version=version, hash=app_hash, flags=flags))
            ins = INS_LIST_APPS_NEXT
        raise ProtocolError(f"app list did not terminate after {MAX_LIST_PAGES} pages")

    def get_challenge(self, context: ChallengeContext) -> Challenge:
        self._outstanding = None
        self._loading = False
        response = classify(self._send(INS_GET_CHALLENGE, p1=int(context)), "get challenge")
        if len(response.data) != CHALLENGE_SIZE:
            raise ProtocolError(
                f"challenge must be {CHALLENGE_SIZE} bytes, got {len(response.data)}"
            )
        self._serial += 1
        challenge = Challenge(nonce=response.data, context=context, serial=self._serial)
        self._outstanding = challenge
        return challenge

    def genuine_check(self, challenge: Challenge, attestation: bytes) -> None:
        outstanding = self._outstanding
        if (
            outstanding is None
            or challenge != outstanding
            or challenge.context is not ChallengeContext.GENUINE_CHECK
        ):
            raise AttestationFailed("Attestation is bound to a stale or foreign challenge")

        self._outstanding = None
        if len(attestation) > MAX_APDU_DATA - CHALLENGE_SIZE:
            raise ProtocolError(f"attestation of {len(attestation)} bytes does not fit one command")
        response = self._send(INS_GENUINE_CHECK, data=challenge.nonce + attestation)
        classify(response, "genuine check", overrides=GENUINE_CHECK_OVERRIDES)

    def delete_app(self, name: str) -> None:
        self._loading = False
        classify(self._send(INS_DELETE_APP, data=_encode_name(name), confirm=True), f"delete {name}")

    def install_app(self, block: bytes) -> None:
        if not block or len(block) > MAX_APDU_DATA:
            raise ProtocolError(f"manifest block of {len(block)} bytes cannot be sent as one command")
        if not self._loading:
            outstanding = self._outstanding
            if outstanding is None or outstanding.context is not ChallengeContext.INSTALL:
                raise ProtocolError("Loading requires an outstanding install challenge")
            self._outstanding = None
            self._loading = True
        try:
            classify(self._send(INS_LOAD_BLOCK, data=block, confirm=True), "load block")
        except LedgerctlError:
            # A failed block ends the load; the next one needs a fresh challenge.
            self._loading = False
            raise

    def open_app(self, name: str) -> None:
        self._loading = False
        classify(self._send(INS_OPEN_APP, data=_encode_name(name), confirm=True), f"open {name}")
