from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field

from .errors import ConfigError


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_json_object(name: str) -> dict[str, str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{name} must be a JSON object, got {type(data).__name__}")
    return {str(k): str(v) for k, v in data.items()}


@dataclass(frozen=True)
class Settings:
    # Replica set
    set_name: str = "statefulset"
    desired_replicas: int = 1

    # Compute
    cluster: str = ""
    task_definition: str = ""
    container_name: str = ""
    subnet_ids: tuple[str, ...] = ()
    security_group_ids: tuple[str, ...] = ()
    task_environment: dict[str, str] = field(default_factory=dict)
    enable_execute_command: bool = False

    # Storage
    volume_size_gib: int = 20
    volume_role_arn: str = ""

    # Network
    hosted_zone_id: str = ""
    dns_domain: str = ""
    dns_ttl_s: int = 5
    target_group_arn: str = ""
    target_port: int | None = None

    # Locking
    lock_backend: str = "dynamodb"  # dynamodb|sqlite
    lock_table: str = ""
    lock_id: str = "replica-controller-lock"
    lock_ttl_s: int = 60
    lock_reclaim_expired: bool = False

    # Timing knobs
    grace_window_s: int = 600
    orphan_min_age_s: int = 120
    snapshot_wait_s: int = 60
    snapshot_poll_s: float = 3
    task_wait_s: int = 120
    task_poll_s: float = 3
    # 0 disables the bound on the address wait.
    address_wait_s: int = 120
    address_poll_s: float = 1

    # Local runtime
    region: str | None = None
    db_path: str = "ess.db"
    loop_enabled: bool = False
    poll_interval_s: int = 60
    log_level: str = "INFO"

    # HTTP API
    api_user: str = "admin"
    api_password: str | None = None

    # Email alerting (optional)
    enable_email: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    email_from: str | None = None
    email_to: str | None = None

    def validate(self) -> None:
        """Raise ConfigError when settings required by the AWS wiring are missing."""
        missing = [
            name
            for name in ("cluster", "task_definition", "hosted_zone_id", "dns_domain", "target_group_arn")
            if not getattr(self, name)
        ]
        if self.lock_backend == "dynamodb" and not self.lock_table:
            missing.append("lock_table")
        if not self.subnet_ids:
            missing.append("subnet_ids")
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")
        if self.desired_replicas < 0:
            raise ConfigError("desired_replicas must be >= 0")
        if self.lock_backend not in {"dynamodb", "sqlite"}:
            raise ConfigError(f"Unknown lock backend '{self.lock_backend}' (use dynamodb|sqlite)")
        if self.lock_reclaim_expired:
            # The ttl must outlast the longest cycle or a live holder looks expired.
            if not self.address_wait_s:
                raise ConfigError("lock_reclaim_expired needs a bounded address_wait_s")
            longest = 2 * self.snapshot_wait_s + self.task_wait_s + self.address_wait_s
            if self.lock_ttl_s <= longest:
                raise ConfigError(
                    f"lock_ttl_s ({self.lock_ttl_s}) must exceed the longest cycle ({longest}s) "
                    "when lock_reclaim_expired is set"
                )


def load_settings() -> Settings:
    """Build Settings from ESS_* environment variables."""
    return Settings(
        set_name=os.getenv("ESS_SET_NAME", "statefulset"),
        desired_replicas=_env_int("ESS_DESIRED_REPLICAS", 1),
        cluster=os.getenv("ESS_CLUSTER_NAME", ""),
        task_definition=os.getenv("ESS_TASK_DEFINITION_ARN", ""),
        container_name=os.getenv("ESS_CONTAINER_NAME", ""),
        subnet_ids=_env_list("ESS_SUBNET_IDS"),
        security_group_ids=_env_list("ESS_SECURITY_GROUP_IDS"),
        task_environment=_env_json_object("ESS_TASK_ENVIRONMENT"),
        enable_execute_command=_env_bool("ESS_ENABLE_EXECUTE_COMMAND", False),
        volume_size_gib=_env_int("ESS_VOLUME_SIZE_GIB", 20),
        volume_role_arn=os.getenv("ESS_VOLUME_ROLE_ARN", ""),
        hosted_zone_id=os.getenv("ESS_HOSTED_ZONE_ID", ""),
        dns_domain=os.getenv("ESS_DNS_DOMAIN", ""),
        dns_ttl_s=_env_int("ESS_DNS_TTL_S", 5),
        target_group_arn=os.getenv("ESS_TARGET_GROUP_ARN", ""),
        target_port=_env_optional_int("ESS_TARGET_PORT"),
        lock_backend=os.getenv("ESS_LOCK_BACKEND", "dynamodb").strip().lower(),
        lock_table=os.getenv("ESS_LOCK_TABLE", ""),
        lock_id=os.getenv("ESS_LOCK_ID", "replica-controller-lock"),
        lock_ttl_s=_env_int("ESS_LOCK_TTL_S", 60),
        lock_reclaim_expired=_env_bool("ESS_LOCK_RECLAIM_EXPIRED", False),
        grace_window_s=_env_int("ESS_GRACE_WINDOW_S", 600),
        orphan_min_age_s=_env_int("ESS_ORPHAN_MIN_AGE_S", 120),
        snapshot_wait_s=_env_int("ESS_SNAPSHOT_WAIT_S", 60),
        snapshot_poll_s=_env_float("ESS_SNAPSHOT_POLL_S", 3),
        task_wait_s=_env_int("ESS_TASK_WAIT_S", 120),
        task_poll_s=_env_float("ESS_TASK_POLL_S", 3),
        address_wait_s=_env_int("ESS_ADDRESS_WAIT_S", 120),
        address_poll_s=_env_float("ESS_ADDRESS_POLL_S", 1),
        region=os.getenv("AWS_REGION") or None,
        db_path=os.getenv("ESS_DB_PATH", "ess.db"),
        loop_enabled=_env_bool("ESS_LOOP_ENABLED", False),
        poll_interval_s=_env_int("ESS_POLL_INTERVAL_S", 60),
        log_level=os.getenv("ESS_LOG_LEVEL", "INFO").upper(),
        api_user=os.getenv("ESS_API_USER", "admin"),
        api_password=os.getenv("ESS_API_PASSWORD") or None,
        enable_email=_env_bool("ESS_ENABLE_EMAIL", False),
        smtp_host=os.getenv("ESS_SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_env_int("ESS_SMTP_PORT", 587),
        smtp_user=os.getenv("ESS_SMTP_USER"),
        smtp_password=os.getenv("ESS_SMTP_PASSWORD"),
        email_from=os.getenv("ESS_EMAIL_FROM"),
        email_to=os.getenv("ESS_EMAIL_TO"),
    )


def configure_logging(settings: Settings) -> None:
    # Lambda installs a root handler before import; replace it.
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        force=True,
    )
