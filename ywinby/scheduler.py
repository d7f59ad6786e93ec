import threading
from dataclasses import dataclass
from typing import Callable

from ywinby.errors import Busy
from ywinby.models import PushMessage, Subscription, epoch_now
from ywinby.policy import select_notification
from ywinby.push import Dispatcher
from ywinby.store import MessageStore


@dataclass(frozen=True)
class Notification:

    email: str

    message_id: str

    push: PushMessage

    subscription: Subscription


@dataclass(frozen=True)
class RunReport:

    messages: int = 0

    skipped: int = 0

    notifications: int = 0

    delivered: int = 0

    failed: int = 0


def collect_notifications(
    store: MessageStore, now: int
) -> tuple[list[Notification], int, int]:
    """Classify every stored message and return the pending notifications.

    Also returns how many messages were scanned and how many were skipped
    because a party could not be loaded.
    """

    messages = store.get_all_messages()

    pending: list[Notification] = []

    skipped = 0

    for message_id, message in messages.items():

        try:
            owner = store.get_user(message.owner)
        except Exception as exc:  # noqa: BLE001
            print(f"Cannot get owner for {message_id}, skip processing: {exc}")
            skipped += 1
            continue

        try:
            recipient = store.get_user(message.recipient)
        except Exception as exc:  # noqa: BLE001
            print(f"Cannot get recipient for {message_id}, skip processing: {exc}")
            skipped += 1
            continue

        selected = select_notification(message, owner, recipient, now)

        if selected is None:
            continue

        push, user = selected

        print(f"Notifying {push.tag} {user.id} about message {message_id}")

        pending.append(
            Notification(
                email=user.id,
                message_id=message_id,
                push=push,
                subscription=user.subscription,
            )
        )

    # Notification is hashable; dict.fromkeys drops duplicates and keeps order
    return list(dict.fromkeys(pending)), len(messages), skipped


def execute_tasks(store: MessageStore, dispatcher: Dispatcher, now: int) -> RunReport:

    print("start executing scheduled task")

    notifications, scanned, skipped = collect_notifications(store, now)

    delivered = 0

    failed = 0

    for n in notifications:

        try:
            dispatcher.deliver(n.subscription, n.push)
        except Exception as exc:  # noqa: BLE001
            failed += 1
            print(f"Cannot push notification to {n.email} about message {n.message_id}: {exc}")
            print(f"Subscription endpoint: {n.subscription.endpoint!r}")
            continue

        delivered += 1

        print(f"Push message sent for message Id: {n.message_id}")

        # best effort: a lost stamp only means a repeated reminder next cycle
        try:
            store.update_message_notified_on(n.message_id, n.email, now)
        except Exception as exc:  # noqa: BLE001
            print(f"Cannot set message last notification timestamp {n.message_id}: {exc}")

        try:
            store.set_message_revealed_if_needed(n.message_id, now)
        except Exception as exc:  # noqa: BLE001
            print(f"Cannot set message revealed flag {n.message_id}: {exc}")

    print(f"Messages processed: {scanned}")

    print(f"Notifications delivered: {delivered}/{len(notifications)}")

    print("done executing scheduled task")

    return RunReport(
        messages=scanned,
        skipped=skipped,
        notifications=len(notifications),
        delivered=delivered,
        failed=failed,
    )


class Scheduler:
    """Runs `execute_tasks` on a timer or on demand, one run at a time.

    A run that finds another one in progress raises Busy straight away
    instead of waiting for it.
    """

    def __init__(
        self,
        store: MessageStore,
        dispatcher: Dispatcher,
        clock: Callable[[], int] = epoch_now,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    def run_once(self, now: int | None = None) -> RunReport:
        if not self._running.acquire(blocking=False):
            raise Busy("task is still executing")
        try:
            return execute_tasks(self.store, self.dispatcher, self.clock() if now is None else now)
        finally:
            self._running.release()

    def start(self, every_seconds: int) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(every_seconds,), name="ywinby-scheduler", daemon=True
        )
        self._thread.start()
        print(f"Scheduler will execute task every {every_seconds} seconds")
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self, every_seconds: int) -> None:
        while not self._stop.wait(every_seconds):
            try:
                self.run_once()
            except Busy:
                print("Scheduled run skipped, previous run still executing")
            except Exception as exc:  # noqa: BLE001
                print(f"Error executing task: {exc}")
