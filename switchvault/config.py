"""
SwitchVault Configuration

Settings come from environment variables, optionally seeded from a .env
file. `build_service` wires one KillSwitchService from a ServiceConfig.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from switchvault.control_plane.audit_checks import build_default_checks
from switchvault.control_plane.authorization import (
    AllowListPolicy,
    AuthorizationGate,
    AuthorizationPolicy,
    RootAuthorityPolicy,
    load_policy,
)
from switchvault.control_plane.kill_switch import KillSwitchService
from switchvault.control_plane.stores import InMemorySwitchStore, SQLiteSwitchStore, SwitchStore
from switchvault.control_plane.watch_broker import WatchBroker
from switchvault.core.retry_strategy import RetryConfig
from switchvault.core.run_ledger import ToggleLedger

logger = logging.getLogger(__name__)


SERVICE_DEFAULTS = {
    "store": "memory",
    "db_path": "data/switchvault/switches.db",
    "ledger_path": "data/switchvault/toggle_ledger.jsonl",
    "max_toggle_attempts": 3,
    "watch_buffer": 1,
    "watch_key": "global",
    "log_level": "INFO",
}

VALID_STORES = {"memory", "sqlite"}


@dataclass
class ServiceConfig:
    """Resolved service settings."""
    store: str = SERVICE_DEFAULTS["store"]
    db_path: str = SERVICE_DEFAULTS["db_path"]
    ledger_path: str = SERVICE_DEFAULTS["ledger_path"]
    policy_path: Optional[str] = None
    root_principal: Optional[str] = None
    max_toggle_attempts: int = SERVICE_DEFAULTS["max_toggle_attempts"]
    watch_buffer: int = SERVICE_DEFAULTS["watch_buffer"]
    watch_key: str = SERVICE_DEFAULTS["watch_key"]
    log_level: str = SERVICE_DEFAULTS["log_level"]

    def __post_init__(self):
        if self.store not in VALID_STORES:
            raise ValueError(f"Unknown store backend: {self.store}. Valid: {sorted(VALID_STORES)}")
        if self.max_toggle_attempts < 1:
            raise ValueError("max_toggle_attempts must be >= 1")
        if self.watch_buffer < 1:
            raise ValueError("watch_buffer must be >= 1")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'ServiceConfig':
        """Read SWITCHVAULT_* variables (from os.environ unless env is given)."""
        env = os.environ if env is None else env
        return cls(
            store=env.get("SWITCHVAULT_STORE", SERVICE_DEFAULTS["store"]).lower(),
            db_path=env.get("SWITCHVAULT_DB_PATH", SERVICE_DEFAULTS["db_path"]),
            ledger_path=env.get("SWITCHVAULT_LEDGER_PATH", SERVICE_DEFAULTS["ledger_path"]),
            policy_path=env.get("SWITCHVAULT_POLICY_PATH") or None,
            root_principal=env.get("SWITCHVAULT_ROOT_PRINCIPAL") or None,
            max_toggle_attempts=int(env.get(
                "SWITCHVAULT_MAX_TOGGLE_ATTEMPTS", SERVICE_DEFAULTS["max_toggle_attempts"],
            )),
            watch_buffer=int(env.get("SWITCHVAULT_WATCH_BUFFER", SERVICE_DEFAULTS["watch_buffer"])),
            watch_key=env.get("SWITCHVAULT_WATCH_KEY", SERVICE_DEFAULTS["watch_key"]),
            log_level=env.get("SWITCHVAULT_LOG_LEVEL", SERVICE_DEFAULTS["log_level"]).upper(),
        )


def load_config(env_file: Optional[str] = None) -> ServiceConfig:
    """Load .env (if present) then build the config from the environment."""
    env_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    return ServiceConfig.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_policy(config: ServiceConfig) -> AuthorizationPolicy:
    """Policy file, else root authority, else deny every mutation."""
    if config.policy_path:
        return load_policy(config.policy_path)
    if config.root_principal:
        return RootAuthorityPolicy(config.root_principal)
    logger.warning("No authorization policy configured; all toggles will be denied")
    return AllowListPolicy({})


def build_store(config: ServiceConfig) -> SwitchStore:
    if config.store == "sqlite":
        return SQLiteSwitchStore(Path(config.db_path))
    return InMemorySwitchStore()


def build_service(
    config: Optional[ServiceConfig] = None,
    policy: Optional[AuthorizationPolicy] = None,
) -> KillSwitchService:
    """Wire a KillSwitchService that owns exactly one store and broker."""
    config = config or ServiceConfig()
    service = KillSwitchService(
        store=build_store(config),
        broker=WatchBroker(buffer_capacity=config.watch_buffer),
        gate=AuthorizationGate(policy or build_policy(config)),
        ledger=ToggleLedger(config.ledger_path),
        retry_config=RetryConfig(max_attempts=config.max_toggle_attempts),
    )
    service.checks = build_default_checks(service, config.watch_key)
    logger.info(
        "SwitchVault service ready (store=%s, policy=%s)",
        config.store, service.gate.policy.name,
    )
    return service
