from ywinby.models import PushMessage, SecretMessage, User


SECONDS_PER_MINUTE = 60

MINIMUM_SECONDS_BETWEEN_RECIPIENT_NOTIFICATION = 86400  # 24 hrs


def window_seconds(message: SecretMessage) -> int:
    return message.verify_every_minutes * SECONDS_PER_MINUTE


def reveal_deadline(message: SecretMessage, owner_last_seen: int) -> int:
    return owner_last_seen + window_seconds(message) * message.max_failed_verification


def should_reveal(message: SecretMessage, owner_last_seen: int, now: int) -> bool:

    if message.revealed:

        return True

    return now >= reveal_deadline(message, owner_last_seen)


def should_notify_owner(message: SecretMessage, owner_last_seen: int, now: int) -> bool:
    """Owner reminders fire once per window, counted from the later of the
    last check-in and the last reminder."""

    if message.revealed:

        return False

    anchor = max(owner_last_seen, message.owner_notified_on)

    return now >= anchor + window_seconds(message)


def should_notify_recipient(message: SecretMessage, owner_last_seen: int, now: int) -> bool:

    if not should_reveal(message, owner_last_seen, now):

        return False

    notify_at = message.recipient_notified_on + MINIMUM_SECONDS_BETWEEN_RECIPIENT_NOTIFICATION

    return now >= notify_at


def build_owner_message() -> PushMessage:
    return PushMessage(
        tag="owner",
        title="Owner verification",
        message="Time to verify your presence!",
    )


def build_recipient_message(owner_id: str) -> PushMessage:
    return PushMessage(
        tag="recipient",
        title="Secret message unlocked!",
        message=(
            f"You can now reveal the message from {owner_id}. "
            "Please delete the message after that to stop this alert."
        ),
    )


def select_notification(
    message: SecretMessage,
    owner: User,
    recipient: User,
    now: int,
) -> tuple[PushMessage, User] | None:
    """Pick at most one notification for this cycle.

    The owner is checked first so they get every configured reminder before
    the recipient hears anything; the recipient is only notified on a cycle
    where the owner is not due.
    """

    if should_notify_owner(message, owner.last_seen, now):

        return build_owner_message(), owner

    if should_notify_recipient(message, owner.last_seen, now):

        return build_recipient_message(owner.id), recipient

    return None
