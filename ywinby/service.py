import secrets
from typing import Callable

from ywinby.errors import AuthError, Forbidden, NotFound, ValidationError
from ywinby.models import MessageView, PushMessage, SecretMessage, Subscription, User, epoch_now
from ywinby.push import Dispatcher
from ywinby.scheduler import RunReport, Scheduler
from ywinby.store import MessageStore


class Service:
    """Operations the HTTP layer calls once a request is authenticated."""

    def __init__(
        self,
        store: MessageStore,
        dispatcher: Dispatcher,
        scheduler: Scheduler,
        verify_bearer: Callable[[str], str],
        *,
        scheduled_task_period: int,
        block_registration: bool = False,
        serverless_token: str = "",
        clock: Callable[[], int] = epoch_now,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.verify_bearer = verify_bearer
        self.scheduled_task_period = scheduled_task_period
        self.block_registration = block_registration
        self.serverless_token = serverless_token
        self.clock = clock

    def authorize(self, token: str) -> str:
        email = self.verify_bearer(token)
        self.touch_user(email, allow_registration=not self.block_registration)
        return email

    def touch_user(self, email: str, *, allow_registration: bool = True) -> User:
        """Record that `email` is alive, registering them on first sight."""
        try:
            return self.store.touch_user(
                email, self.clock(), allow_registration=allow_registration
            )
        except NotFound:
            print(f"Rejecting {email}, not registered and registration disabled")
            raise AuthError("email is not registered") from None

    def create_message(
        self,
        owner: str,
        recipient: str,
        share: str,
        verify_every_minutes: int,
        max_failed_verification: int,
    ) -> str:

        if self.scheduled_task_period > verify_every_minutes * 60:

            raise ValidationError(
                "verification time is too short, server minimum is "
                f"{self.scheduled_task_period // 60} minutes"
            )

        if owner == recipient:

            raise ValidationError("owner and recipient must be different")

        recipient_user = self.store.get_user(recipient)

        if not recipient_user.subscription.is_usable():

            raise ValidationError("recipient hasn't subscribed to push notification")

        message_id = self.store.put_message(
            SecretMessage(
                owner=owner,
                recipient=recipient,
                system_share=share,
                verify_every_minutes=verify_every_minutes,
                max_failed_verification=max_failed_verification,
            )
        )

        print(f"{owner} created message {message_id} for {recipient}")

        return message_id

    def list_messages_for(self, email: str) -> list[MessageView]:
        return self.store.get_messages_for(email, self.clock())

    def delete_message(self, email: str, message_id: str) -> None:
        self.store.delete_message(email, message_id, self.clock())

    def subscribe(self, email: str, subscription: Subscription) -> None:
        self.store.subscribe(email, subscription)
        print(f"{email} subscribed")

    def unsubscribe(self, email: str) -> None:
        self.store.unsubscribe(email)
        print(f"{email} unsubscribed")

    def send_test_notification(self, email: str, recipient: str | None = None) -> None:
        target = self.store.get_user(recipient or email)

        if target.id == email:
            push = PushMessage(
                tag="test",
                title="Ywinby says \N{WAVING HAND SIGN}",
                message="This means you're ready to receive future notifications!",
            )
        else:
            push = PushMessage(
                tag="test",
                title=f"{email} says \N{WAVING HAND SIGN}",
                message=f"{email} wants to confirm that you're active on Ywinby",
            )

        self.dispatcher.deliver(target.subscription, push)
        print(f"Push notification test message sent to {target.id}")

    def trigger_scheduler_run(self, token: str) -> RunReport:
        """On-demand run for deployments without a resident timer."""

        if not self.serverless_token:
            raise Forbidden("scheduled task trigger is not enabled")

        if not secrets.compare_digest(token.encode("utf-8"), self.serverless_token.encode("utf-8")):
            raise AuthError("correct access token required")

        return self.scheduler.run_once()
