"""Process entry point.

By default a single scheduler pass runs and the process exits, so the job can
be driven by cron or a platform scheduler. `--loop` keeps a resident timer
instead, unless SERVERLESS_TOKEN is set: then runs only happen through the
token-guarded trigger. `--generate` prints a new VAPID key pair.
"""

import signal
import sys
import threading
import time
from pathlib import Path

from ywinby.config import STORAGE_SUPABASE, Settings, load_settings, write_client_config
from ywinby.identity import GoogleIdentityVerifier
from ywinby.push import PUSH_SUBJECT_CLAIM, WebPushDispatcher, generate_vapid_keys
from ywinby.scheduler import Scheduler
from ywinby.service import Service
from ywinby.store import JsonFileStore, MessageStore
from ywinby.supabase_store import SupabaseStore


STATIC_DIR = Path("static")

TRANSIENT_RETRY_DELAYS_SECONDS = (15, 45)


def build_store(settings: Settings) -> MessageStore:
    if settings.storage == STORAGE_SUPABASE:
        return SupabaseStore.from_credentials(settings.supabase_url, settings.supabase_key)
    return JsonFileStore(settings.data_dir)


def build_dispatcher(settings: Settings) -> WebPushDispatcher:
    return WebPushDispatcher(
        settings.push_privkey,
        settings.push_subject or PUSH_SUBJECT_CLAIM,
    )


def build_service(settings: Settings) -> Service:
    store = build_store(settings)
    dispatcher = build_dispatcher(settings)
    return Service(
        store,
        dispatcher,
        Scheduler(store, dispatcher),
        GoogleIdentityVerifier(settings.client_id).verify_bearer,
        scheduled_task_period=settings.scheduled_task_period,
        block_registration=settings.block_registration,
        serverless_token=settings.serverless_token,
    )


def print_new_keys() -> int:
    private_key, public_key = generate_vapid_keys()
    print(
        "These can be used for PUSH_PRIVKEY and PUSH_PUBKEY:\n"
        f"- privateKey: {private_key}\n"
        f"- publicKey: {public_key}"
    )
    return 0


def run_forever(scheduler: Scheduler, every_seconds: int) -> int:
    stop_evt = threading.Event()

    def _sig(*_):
        stop_evt.set()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    scheduler.start(every_seconds)
    stop_evt.wait()
    scheduler.stop()
    print("Scheduler is shutting down")
    return 0


def main(argv: list[str] | None = None) -> int:

    args = sys.argv[1:] if argv is None else argv

    if "--generate" in args:

        return print_new_keys()

    settings = load_settings()

    write_client_config(settings, STATIC_DIR)

    service = build_service(settings)

    if "--loop" in args:

        if settings.serverless_token:

            print("SERVERLESS_TOKEN is set, not starting the resident scheduler")

            return 0

        return run_forever(service.scheduler, settings.scheduled_task_period)

    if settings.serverless_token:

        report = service.trigger_scheduler_run(settings.serverless_token)

    else:

        report = service.scheduler.run_once()

    print(f"Messages skipped: {report.skipped}")

    print(f"Notifications failed: {report.failed}")

    return 0


def is_transient_error_message(message: str) -> bool:

    lowered = message.lower()

    return any(

        token in lowered

        for token in (

            "500",

            "502",

            "503",

            "504",

            "429",

            "connectionerror",

            "timeout",

            "temporar",

            "network",

        )

    )


def run() -> int:
    attempts = len(TRANSIENT_RETRY_DELAYS_SECONDS) + 1
    for attempt in range(attempts):
        try:
            return main()
        except Exception as exc:  # noqa: BLE001
            if is_transient_error_message(str(exc)) and attempt < attempts - 1:
                delay = TRANSIENT_RETRY_DELAYS_SECONDS[attempt]
                print(f"Transient error (attempt {attempt + 1}/{attempts}), retrying in {delay}s: {exc}")
                time.sleep(delay)
            else:
                print(f"Heartbeat failed: {exc}")
                return 1
    return 1


if __name__ == "__main__":
    sys.exit(run())
