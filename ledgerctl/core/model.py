"""Core data models used across codec, session, commands, orchestrator and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum

from ledgerctl.core.errors import LedgerctlError

MAX_APDU_DATA = 255


@dataclass(frozen=True)
class DetectedDevice:
    path: str
    vendor_id: int
    product_id: int
    product: str = "<unknown-device>"


@dataclass(frozen=True)
class DeviceHandle:
    """Ownership token for one opened device; required by every session call."""

    path: str
    vendor_id: int
    product_id: int
    token: str
    firmware_version: str | None = None
    target_id: int | None = None


@dataclass(frozen=True)
class Command:
    cla: int
    ins: int
    p1: int = 0
    p2: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        for name in ("cla", "ins", "p1", "p2"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"{name} must fit in one byte, got {value:#x}")
        if len(self.data) > MAX_APDU_DATA:
            raise ValueError(
                f"command data is {len(self.data)} bytes, max is {MAX_APDU_DATA}"
            )

    def to_bytes(self) -> bytes:
        return bytes((self.cla, self.ins, self.p1, self.p2, len(self.data))) + self.data


@dataclass(frozen=True)
class Response:
    sw: int
    data: bytes = b""

    @property
    def status(self) -> "StatusWord":
        from ledgerctl.core.status import StatusWord

        return StatusWord.parse(self.sw)


class ChallengeContext(IntEnum):
    GENUINE_CHECK = 0x01
    INSTALL = 0x02


@dataclass(frozen=True)
class Challenge:
    nonce: bytes
    context: ChallengeContext
    serial: int


@dataclass(frozen=True)
class AppInfo:
    name: str
    version: str
    hash: str
    flags: int = 0


@dataclass(frozen=True)
class DeviceIdentity:
    target_id: int
    firmware_version: str
    mcu_version: str


@dataclass(frozen=True)
class DeviceInfo:
    target_id: int
    firmware_version: str
    mcu_version: str
    flags: int = 0
    apps: tuple[AppInfo, ...] = ()

    @property
    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(
            target_id=self.target_id,
            firmware_version=self.firmware_version,
            mcu_version=self.mcu_version,
        )

    @property
    def model(self) -> str:
        from ledgerctl.core.device_match import model_for_target

        return model_for_target(self.target_id)

    def find_app(self, name: str) -> AppInfo | None:
        lowered = name.lower()
        for app in self.apps:
            if app.name.lower() == lowered:
                return app
        return None


@dataclass(frozen=True)
class AppRelease:
    name: str
    version: str
    hash: str
    firmware: str = ""


@dataclass(frozen=True)
class Manifest:
    app_name: str
    version: str
    hash: str
    blocks: tuple[bytes, ...]


class TransactionKind(str, Enum):
    GENUINE_CHECK = "genuine-check"
    INSTALL = "install"
    UPDATE = "update"
    OPEN = "open"


class TransactionState(str, Enum):
    START = "Start"
    LISTING = "Listing"
    CHALLENGE_REQUESTED = "ChallengeRequested"
    ATTESTATION_FETCHED = "AttestationFetched"
    MANIFEST_REQUESTED = "ManifestRequested"
    DELETING = "Deleting"
    LOADING = "Loading"
    VERIFYING = "Verifying"
    OPENING = "Opening"
    VERIFIED = "Verified"
    INSTALLED = "Installed"
    OPENED = "Opened"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        TransactionState.VERIFIED,
        TransactionState.INSTALLED,
        TransactionState.OPENED,
        TransactionState.FAILED,
    }
)


@dataclass
class Transaction:
    kind: TransactionKind
    handle: DeviceHandle
    state: TransactionState = TransactionState.START
    history: list[TransactionState] = field(default_factory=lambda: [TransactionState.START])
    challenge: Challenge | None = None
    manifest: Manifest | None = None
    info: DeviceInfo | None = None
    app: AppInfo | None = None
    short_circuited: bool = False

    def advance(self, state: TransactionState) -> None:
        if self.state.terminal:
            raise RuntimeError(f"transaction already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class TransactionResult:
    kind: TransactionKind
    state: TransactionState
    history: tuple[TransactionState, ...]
    error: LedgerctlError | None = None
    info: DeviceInfo | None = None
    app: AppInfo | None = None
    short_circuited: bool = False

    @property
    def ok(self) -> bool:
        return self.state is not TransactionState.FAILED

    @property
    def failed_at(self) -> TransactionState | None:
        if self.ok or len(self.history) < 2:
            return None
        return self.history[-2]
