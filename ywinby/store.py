import json
import os
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import replace
from pathlib import Path
from typing import Callable
from urllib.parse import quote

from ywinby.errors import Forbidden, NotFound, StorageError, ValidationError
from ywinby.models import (
    MAX_FAILED_VERIFICATION,
    MAX_VERIFY_EVERY_MINUTES,
    MIN_FAILED_VERIFICATION,
    MIN_VERIFY_EVERY_MINUTES,
    MessageView,
    SecretMessage,
    Subscription,
    User,
    epoch_now,
)
from ywinby.policy import should_reveal


OWNER_NOTIFIED_FIELD = "owner_notified_on"

RECIPIENT_NOTIFIED_FIELD = "recipient_notified_on"


def validate_message(message: SecretMessage) -> None:

    if not message.owner:

        raise ValidationError("owner must not be empty")

    if not message.recipient:

        raise ValidationError("recipient must not be empty")

    if not MIN_FAILED_VERIFICATION <= message.max_failed_verification <= MAX_FAILED_VERIFICATION:

        raise ValidationError("maximum consecutive failure should be between 1 and 9")

    if not MIN_VERIFY_EVERY_MINUTES <= message.verify_every_minutes <= MAX_VERIFY_EVERY_MINUTES:

        raise ValidationError(
            "maximum time between verification should be between 1 minute and 99 months"
        )


def new_message_id() -> str:
    return str(uuid.uuid4())


class MessageStore(ABC):
    """Storage contract shared by every backend.

    Backends implement the record primitives (`_read_*`, `_write_*`, ...);
    the operations built on top of them, including the lazy reveal check and
    the share disclosure rules, live here so every backend behaves the same.
    Public operations run inside `_lock()`, which backends without their own
    per-record atomicity override with a real mutex.
    """

    def __init__(self, clock: Callable[[], int] = epoch_now) -> None:
        self.clock = clock

    def _lock(self):
        return nullcontext()

    def _now(self, now: int | None) -> int:
        return self.clock() if now is None else now

    @abstractmethod
    def _read_user(self, user_id: str) -> User | None: ...

    @abstractmethod
    def _write_user(self, user: User) -> None: ...

    @abstractmethod
    def _read_message(self, message_id: str) -> SecretMessage | None: ...

    @abstractmethod
    def _write_message(self, message: SecretMessage) -> None: ...

    @abstractmethod
    def _remove_message(self, message_id: str) -> None: ...

    @abstractmethod
    def _read_all_messages(self) -> dict[str, SecretMessage]: ...

    def _messages_for(self, email: str) -> dict[str, SecretMessage]:
        return {
            message_id: message
            for message_id, message in self._read_all_messages().items()
            if email in (message.owner, message.recipient)
        }

    def _mark_revealed(self, message: SecretMessage) -> None:
        self._write_message(replace(message, revealed=True))

    def _mark_notified(self, message: SecretMessage, field_name: str, now: int) -> None:
        if getattr(message, field_name) >= now:
            return
        self._write_message(replace(message, **{field_name: now}))

    def _replace_user(self, user_id: str, **changes) -> bool:
        user = self._read_user(user_id)
        if user is None:
            return False
        self._write_user(replace(user, **changes))
        return True

    def _set_last_seen(self, user_id: str, now: int) -> bool:
        """Write only `last_seen`. False when the user does not exist."""
        return self._replace_user(user_id, last_seen=now)

    def _set_subscription(self, user_id: str, subscription: Subscription) -> bool:
        """Write only the subscription. False when the user does not exist."""
        return self._replace_user(user_id, subscription=subscription)

    def _insert_user(self, user: User) -> None:
        if self._read_user(user.id) is None:
            self._write_user(user)

    # Users

    def put_user(self, user: User) -> None:
        with self._lock():
            self._write_user(user)
        print(f"user upserted, Id: {user.id}")

    def get_user(self, user_id: str) -> User:
        with self._lock():
            user = self._read_user(user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return user

    def touch_user(
        self, email: str, now: int | None = None, *, allow_registration: bool = True
    ) -> User:
        """Stamp `last_seen`, registering `email` on first sight.

        Only the liveness column is written, so a subscription saved by a
        concurrent request is kept.
        """
        now = self._now(now)
        with self._lock():
            if not self._set_last_seen(email, now):
                if not allow_registration:
                    raise NotFound(f"user {email} not found")
                self._insert_user(User(id=email, last_seen=now))
                # another request may have registered the same user first
                self._set_last_seen(email, now)
                print(f"user registered, Id: {email}")
            return self.get_user(email)

    def subscribe(self, email: str, subscription: Subscription) -> None:
        with self._lock():
            if not self._set_subscription(email, subscription):
                raise NotFound(f"user {email} not found")

    def unsubscribe(self, email: str) -> None:
        self.subscribe(email, Subscription())

    # Messages

    def put_message(self, message: SecretMessage) -> str:
        validate_message(message)
        stored = replace(
            message,
            id=new_message_id(),
            created_ts=self.clock(),
            recipient_notified_on=0,
            owner_notified_on=0,
            revealed=False,
        )
        with self._lock():
            self._write_message(stored)
        print(f"message upserted, Id: {stored.id}")
        return stored.id

    def get_message(self, message_id: str) -> SecretMessage:
        with self._lock():
            message = self._read_message(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        return message

    def get_all_messages(self) -> dict[str, SecretMessage]:
        with self._lock():
            return self._read_all_messages()

    def update_message_notified_on(
        self, message_id: str, email: str, now: int | None = None
    ) -> None:
        now = self._now(now)
        with self._lock():
            message = self.get_message(message_id)
            if email == message.recipient:
                field_name = RECIPIENT_NOTIFIED_FIELD
            elif email == message.owner:
                field_name = OWNER_NOTIFIED_FIELD
            else:
                return
            self._mark_notified(message, field_name, now)

    def set_message_revealed_if_needed(self, message_id: str, now: int | None = None) -> bool:
        """Persist `revealed` once the deadline has passed.

        Returns the reveal state. Once the flag is stored this is a pure read.
        """
        now = self._now(now)
        with self._lock():
            message = self.get_message(message_id)
            if message.revealed:
                return True
            owner = self.get_user(message.owner)
            if not should_reveal(message, owner.last_seen, now):
                return False
            self._mark_revealed(message)
        print(f"message revealed, Id: {message_id}")
        return True

    def get_messages_for(self, email: str, now: int | None = None) -> list[MessageView]:
        now = self._now(now)
        views: list[MessageView] = []
        with self._lock():
            messages = self._messages_for(email)
            for message_id in sorted(messages):
                message = messages[message_id]
                owner = self.get_user(message.owner)
                recipient = self.get_user(message.recipient)

                # the flag only ever flips false -> true, so settle it before disclosing
                revealed = self.set_message_revealed_if_needed(message_id, now)

                share = None
                if email == message.owner or (email == message.recipient and revealed):
                    share = message.system_share

                views.append(
                    MessageView(
                        id=message_id,
                        owner=owner.id,
                        recipient=recipient.id,
                        verify_every_minutes=message.verify_every_minutes,
                        max_failed_verification=message.max_failed_verification,
                        created_ts=message.created_ts,
                        revealed=revealed,
                        owner_last_seen=owner.last_seen,
                        recipient_last_seen=recipient.last_seen,
                        system_share=share,
                    )
                )
        return views

    def delete_message(self, email: str, message_id: str, now: int | None = None) -> None:
        with self._lock():
            message = self._read_message(message_id)
            if message is None or email not in (message.owner, message.recipient):
                raise NotFound(f"message {message_id} not found")
            if email == message.owner:
                allowed = True
            else:
                allowed = self.set_message_revealed_if_needed(message_id, now)
            if not allowed:
                raise Forbidden("recipient can only delete a message once it is revealed")
            self._remove_message(message_id)
        print(f"{email} deleted message {message_id}")


class JsonFileStore(MessageStore):
    """One pretty-printed JSON file per record under `users/` and `messages/`.

    There is no transactional engine underneath, so every public operation is
    serialized behind a single re-entrant mutex. Records are replaced through
    a temp file so a concurrent reader never sees a torn write.
    """

    def __init__(self, path: str | os.PathLike, clock: Callable[[], int] = epoch_now) -> None:
        super().__init__(clock)
        self.root = Path(path)
        self.users_dir = self.root / "users"
        self.messages_dir = self.root / "messages"
        try:
            self.users_dir.mkdir(parents=True, exist_ok=True)
            self.messages_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create storage directory {self.root}: {exc}") from exc
        self._mutex = threading.RLock()

    def _lock(self):
        return self._mutex

    @staticmethod
    def _record_path(directory: Path, key: str) -> Path:
        return directory / f"{quote(key, safe='@+')}.json"

    def _load(self, path: Path) -> dict | None:
        try:
            with path.open(encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StorageError(f"cannot read {path}: {exc}") from exc

    def _dump(self, path: Path, data: dict) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"cannot write {path}: {exc}") from exc

    def _read_user(self, user_id: str) -> User | None:
        data = self._load(self._record_path(self.users_dir, user_id))
        if data is None:
            return None
        try:
            return User.from_dict(data)
        except KeyError as exc:
            raise StorageError(f"malformed user record {user_id}: {exc}") from exc

    def _write_user(self, user: User) -> None:
        self._dump(self._record_path(self.users_dir, user.id), user.to_dict())

    def _read_message(self, message_id: str) -> SecretMessage | None:
        data = self._load(self._record_path(self.messages_dir, message_id))
        if data is None:
            return None
        return replace(SecretMessage.from_dict(data), id=message_id)

    def _write_message(self, message: SecretMessage) -> None:
        self._dump(self._record_path(self.messages_dir, message.id), message.to_dict())

    def _remove_message(self, message_id: str) -> None:
        try:
            self._record_path(self.messages_dir, message_id).unlink()
        except FileNotFoundError as exc:
            raise NotFound(f"message {message_id} not found") from exc
        except OSError as exc:
            raise StorageError(f"cannot delete message {message_id}: {exc}") from exc

    def _read_all_messages(self) -> dict[str, SecretMessage]:
        messages: dict[str, SecretMessage] = {}
        try:
            paths = sorted(self.messages_dir.glob("*.json"))
        except OSError as exc:
            raise StorageError(f"cannot list {self.messages_dir}: {exc}") from exc
        for path in paths:
            try:
                data = self._load(path)
            except StorageError as exc:
                print(f"Skipping unreadable message record {path.name}: {exc}")
                continue
            if data is None:
                continue
            message = SecretMessage.from_dict(data)
            if not message.id:
                print(f"Skipping message record without id: {path.name}")
                continue
            messages[message.id] = message
        return messages
