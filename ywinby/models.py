import time
from dataclasses import asdict, dataclass, field


MIN_VERIFY_EVERY_MINUTES = 1

MAX_VERIFY_EVERY_MINUTES = 4_336_204  # ~99 months

MIN_FAILED_VERIFICATION = 1

MAX_FAILED_VERIFICATION = 9


def epoch_now() -> int:
    return int(time.time())


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class Keys:

    p256dh: str = ""

    auth: str = ""


@dataclass(frozen=True)
class Subscription:

    endpoint: str = ""

    keys: Keys = field(default_factory=Keys)

    def is_usable(self) -> bool:
        return bool(self.endpoint and self.keys.auth)

    @classmethod
    def from_dict(cls, data: dict | None) -> "Subscription":
        if not data:
            return cls()
        keys = data.get("keys") or {}
        return cls(
            endpoint=str(data.get("endpoint") or ""),
            keys=Keys(
                p256dh=str(keys.get("p256dh") or ""),
                auth=str(keys.get("auth") or ""),
            ),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class User:

    id: str

    last_seen: int = 0

    subscription: Subscription = field(default_factory=Subscription)

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=str(data["id"]),
            last_seen=_as_int(data.get("last_seen")),
            subscription=Subscription.from_dict(data.get("subscription")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SecretMessage:
    """One deposited share plus the liveness policy guarding it.

    Timestamps are epoch seconds. `revealed` only ever moves from False to
    True, and both `*_notified_on` stamps only ever increase.
    """

    recipient: str

    system_share: str

    verify_every_minutes: int

    max_failed_verification: int

    owner: str = ""

    created_ts: int = 0

    recipient_notified_on: int = 0

    owner_notified_on: int = 0

    revealed: bool = False

    id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "SecretMessage":
        return cls(
            recipient=str(data.get("recipient") or ""),
            system_share=str(data.get("system_share") or ""),
            verify_every_minutes=_as_int(data.get("verify_every_minutes")),
            max_failed_verification=_as_int(data.get("max_failed_verification")),
            owner=str(data.get("owner") or ""),
            created_ts=_as_int(data.get("created_ts")),
            recipient_notified_on=_as_int(data.get("recipient_notified_on")),
            owner_notified_on=_as_int(data.get("owner_notified_on")),
            revealed=data.get("revealed") is True,
            id=str(data.get("id") or ""),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MessageView:
    """What one party gets to see of a message.

    `system_share` is None whenever the viewer is not allowed to see it.
    """

    id: str

    owner: str

    recipient: str

    verify_every_minutes: int

    max_failed_verification: int

    created_ts: int

    revealed: bool

    owner_last_seen: int

    recipient_last_seen: int

    system_share: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.system_share is None:
            del data["system_share"]
        return data


@dataclass(frozen=True)
class PushMessage:

    tag: str

    title: str

    message: str

    def to_dict(self) -> dict:
        return asdict(self)
