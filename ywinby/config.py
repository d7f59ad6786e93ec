import json
import os
from dataclasses import dataclass
from pathlib import Path


STORAGE_JSON = "json"

STORAGE_SUPABASE = "supabase"

DEFAULT_SCHEDULED_TASK_PERIOD = 3600

DEFAULT_BASE_API_PATH = "http://localhost:8080"

TRUTHY = {"1", "true", "yes", "on"}


def get_env(name: str, default: str | None = None) -> str:

    value = os.getenv(name, default)

    if value is None or value == "":

        raise RuntimeError(f"Missing required environment variable: {name}")

    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer: {raw!r}") from exc


@dataclass(frozen=True)
class Settings:

    storage: str = STORAGE_JSON

    data_dir: str = "db"

    supabase_url: str = ""

    supabase_key: str = ""

    scheduled_task_period: int = DEFAULT_SCHEDULED_TASK_PERIOD

    push_privkey: str = ""

    push_pubkey: str = ""

    push_subject: str = ""

    client_id: str = ""

    block_registration: bool = False

    serverless_token: str = ""

    base_api_path: str = DEFAULT_BASE_API_PATH


def load_settings() -> Settings:
    storage = os.getenv("STORAGE", STORAGE_JSON).lower()
    if storage not in (STORAGE_JSON, STORAGE_SUPABASE):
        raise RuntimeError(f"STORAGE must be '{STORAGE_JSON}' or '{STORAGE_SUPABASE}', got {storage!r}")

    supabase_url = ""
    supabase_key = ""
    if storage == STORAGE_SUPABASE:
        supabase_url = get_env("SUPABASE_URL")
        supabase_key = get_env("SUPABASE_SERVICE_ROLE_KEY")

    period = _env_int("SCHEDULED_TASK_PERIOD", DEFAULT_SCHEDULED_TASK_PERIOD)
    if period < 1:
        raise RuntimeError("SCHEDULED_TASK_PERIOD must be at least 1 second")

    return Settings(
        storage=storage,
        data_dir=os.getenv("DATA_DIR", "db"),
        supabase_url=supabase_url,
        supabase_key=supabase_key,
        scheduled_task_period=period,
        push_privkey=get_env("PUSH_PRIVKEY"),
        push_pubkey=get_env("PUSH_PUBKEY"),
        push_subject=os.getenv("PUSH_SUBJECT", ""),
        client_id=os.getenv("CLIENT_ID", ""),
        block_registration=os.getenv("BLOCK_REGISTRATION", "").lower() in TRUTHY,
        serverless_token=os.getenv("SERVERLESS_TOKEN", ""),
        base_api_path=os.getenv("BASE_API_PATH", DEFAULT_BASE_API_PATH),
    )


def write_client_config(settings: Settings, directory: str | os.PathLike) -> Path:
    """Write runtime-config.json, which web clients read to find the API and
    the push public key."""
    target_dir = Path(directory)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / "runtime-config.json"
    config = {
        "api_url": settings.base_api_path,
        "push_pubkey_base64": settings.push_pubkey,
    }
    target.write_text(json.dumps(config, indent=2), encoding="utf-8")
    return target
