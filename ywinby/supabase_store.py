from typing import Callable

from supabase import create_client

from ywinby.errors import StorageError
from ywinby.models import SecretMessage, Subscription, User, epoch_now
from ywinby.store import MessageStore


USERS_TABLE = "users"

MESSAGES_TABLE = "messages"

PAGE_SIZE = 1000


def fetch_all_rows(query_builder) -> list[dict]:
    """Paginate through a Supabase query to fetch all matching rows.

    PostgREST caps responses at ~1000 rows by default, so this fetches in
    PAGE_SIZE batches using .range() until a batch comes back short.
    """
    all_rows: list[dict] = []
    offset = 0
    while True:
        response = query_builder.range(offset, offset + PAGE_SIZE - 1).execute()
        batch = response.data or []
        all_rows.extend(batch)
        if len(batch) < PAGE_SIZE:
            break
        offset += PAGE_SIZE
    return all_rows


class SupabaseStore(MessageStore):
    """Remote document store backed by two Supabase tables.

    Each row update is atomic on the server, so no local mutex is taken.
    Reveal and notification stamps are conditional updates: the `revealed`
    flag is only written where it is still false, and a stamp is only
    written where the stored value is older. Liveness and subscription
    changes update their own column, so neither overwrites the other.

    Expected tables:

        users(
            id text primary key,          -- email
            last_seen bigint not null default 0,
            subscription jsonb            -- {"endpoint", "keys": {"p256dh", "auth"}}
        )

        messages(
            id text primary key,
            owner text not null,
            recipient text not null,
            system_share text not null,
            verify_every_minutes integer not null,
            max_failed_verification integer not null,
            created_ts bigint not null default 0,
            recipient_notified_on bigint not null default 0,
            owner_notified_on bigint not null default 0,
            revealed boolean not null default false
        )

    with indexes on `messages.owner` and `messages.recipient`.
    """

    def __init__(self, client, clock: Callable[[], int] = epoch_now) -> None:
        super().__init__(clock)
        self.client = client

    @classmethod
    def from_credentials(
        cls, url: str, key: str, clock: Callable[[], int] = epoch_now
    ) -> "SupabaseStore":
        return cls(create_client(url, key), clock)

    def _execute(self, query, action: str):
        try:
            return query.execute()
        except Exception as exc:  # noqa: BLE001
            raise StorageError(f"{action} failed: {exc}") from exc

    def _select_one(self, table: str, row_id: str) -> dict | None:
        response = self._execute(
            self.client.table(table).select("*").eq("id", row_id).limit(1),
            f"get {table} {row_id}",
        )
        rows = response.data or []
        return rows[0] if rows else None

    def _read_user(self, user_id: str) -> User | None:
        row = self._select_one(USERS_TABLE, user_id)
        return User.from_dict(row) if row else None

    def _write_user(self, user: User) -> None:
        self._execute(
            self.client.table(USERS_TABLE).upsert(user.to_dict()),
            f"upsert user {user.id}",
        )

    def _update_user(self, user_id: str, values: dict, action: str) -> bool:
        response = self._execute(
            self.client.table(USERS_TABLE).update(values).eq("id", user_id),
            f"{action} {user_id}",
        )
        return bool(response.data)

    def _set_last_seen(self, user_id: str, now: int) -> bool:
        return self._update_user(user_id, {"last_seen": now}, "touch user")

    def _set_subscription(self, user_id: str, subscription: Subscription) -> bool:
        return self._update_user(
            user_id, {"subscription": subscription.to_dict()}, "subscribe user"
        )

    def _insert_user(self, user: User) -> None:
        self._execute(
            self.client.table(USERS_TABLE).upsert(user.to_dict(), ignore_duplicates=True),
            f"register user {user.id}",
        )

    def _read_message(self, message_id: str) -> SecretMessage | None:
        row = self._select_one(MESSAGES_TABLE, message_id)
        return SecretMessage.from_dict(row) if row else None

    def _write_message(self, message: SecretMessage) -> None:
        self._execute(
            self.client.table(MESSAGES_TABLE).upsert(message.to_dict()),
            f"upsert message {message.id}",
        )

    def _remove_message(self, message_id: str) -> None:
        self._execute(
            self.client.table(MESSAGES_TABLE).delete().eq("id", message_id),
            f"delete message {message_id}",
        )

    def _read_all_messages(self) -> dict[str, SecretMessage]:
        try:
            rows = fetch_all_rows(
                self.client.table(MESSAGES_TABLE).select("*").order("id")
            )
        except Exception as exc:  # noqa: BLE001
            raise StorageError(f"list messages failed: {exc}") from exc
        return {str(row["id"]): SecretMessage.from_dict(row) for row in rows}

    def _messages_for(self, email: str) -> dict[str, SecretMessage]:
        messages: dict[str, SecretMessage] = {}
        for column in ("owner", "recipient"):
            try:
                rows = fetch_all_rows(
                    self.client.table(MESSAGES_TABLE)
                    .select("*")
                    .eq(column, email)
                    .order("id")
                )
            except Exception as exc:  # noqa: BLE001
                raise StorageError(f"list messages for {email} failed: {exc}") from exc
            for row in rows:
                messages[str(row["id"])] = SecretMessage.from_dict(row)
        return messages

    def _mark_revealed(self, message: SecretMessage) -> None:
        self._execute(
            self.client.table(MESSAGES_TABLE)
            .update({"revealed": True})
            .eq("id", message.id)
            .eq("revealed", False),
            f"reveal message {message.id}",
        )

    def _mark_notified(self, message: SecretMessage, field_name: str, now: int) -> None:
        self._execute(
            self.client.table(MESSAGES_TABLE)
            .update({field_name: now})
            .eq("id", message.id)
            .lt(field_name, now),
            f"stamp {field_name} on message {message.id}",
        )
