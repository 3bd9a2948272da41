import hashlib
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import yaml

from gatekeeper.core.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "config/gatekeeper.yaml"
DEFAULT_LIVE_WINDOW_HOURS = 168
DEFAULT_USER_ID_PREFIX = "gk-"

_ENV_PATTERN = re.compile(r'\$\{([A-Z0-9_]+)\}')


@dataclass(frozen=True)
class GroupSettings:
    """Identity-store group names that map members onto gatekeeper roles."""
    approver: str = "gatekeeper-approvers"
    auditor: str = "gatekeeper-auditors"
    support: str = "gatekeeper-support"
    ops: str = "gatekeeper-ops"
    # Groups named <prefix><APP> grant ownership of resources tagged with APP
    application_prefix: str = "app-"


@dataclass(frozen=True)
class EmailSettings:
    sender: str = "gatekeeper@example.com"
    approvers: str = ""
    ops: str = ""
    team: str = ""
    send_access_requested_email: bool = False
    change_disclaimer: str = ""
    region: str = "us-east-1"
    # False keeps notifications in-process (logged only), for local runs
    use_ses: bool = False


@dataclass(frozen=True)
class StoreSettings:
    backend: str = "memory"
    table_name: str = ""
    region: str = "us-east-1"


@dataclass(frozen=True)
class GatekeeperSettings:
    """
    Immutable runtime configuration.
    Safe for concurrent unsynchronized reads once loaded.
    """
    approval_policy: Mapping[str, Mapping[str, int]]
    accounts: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    groups: GroupSettings = field(default_factory=GroupSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    sns_topic_arn: Optional[str] = None
    live_window_hours: int = DEFAULT_LIVE_WINDOW_HOURS
    user_id_prefix: str = DEFAULT_USER_ID_PREFIX
    audit_log_dir: str = "audit_logs"
    config_hash: str = ""


def expand_env_vars(raw_yaml: str) -> str:
    """
    Replaces ${VAR_NAME} with the value from os.environ.
    Raises an error if the variable is missing so we never run half-configured.
    """
    def replace(match):
        var_name = match.group(1)
        val = os.environ.get(var_name)
        if not val:
            raise ConfigurationError(
                f"CRITICAL: Settings reference ${{{var_name}}}, but the environment variable is missing."
            )
        return val

    return _ENV_PATTERN.sub(replace, raw_yaml)


def _freeze_policy(raw: Any) -> Mapping[str, Mapping[str, int]]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError("'approval_policy' must be a non-empty mapping of role -> sdlc -> hours")

    frozen: Dict[str, Mapping[str, int]] = {}
    for role, thresholds in raw.items():
        if not isinstance(thresholds, dict):
            raise ConfigurationError(f"Approval policy for role '{role}' must be a mapping of sdlc -> hours")
        try:
            frozen[str(role).upper()] = MappingProxyType(
                {str(sdlc).lower(): int(hours) for sdlc, hours in thresholds.items()}
            )
        except (TypeError, ValueError):
            raise ConfigurationError(f"Approval policy for role '{role}' contains a non-integer threshold")
    return MappingProxyType(frozen)


def settings_from_dict(data: Dict[str, Any], config_hash: str = "") -> GatekeeperSettings:
    """Builds settings from an already-parsed mapping (used by tests and load_settings)."""
    if not isinstance(data, dict):
        raise ConfigurationError("Settings file must contain a mapping at the top level")

    groups = data.get("groups", {}) or {}
    email = data.get("email", {}) or {}
    store = data.get("store", {}) or {}
    events = data.get("events", {}) or {}

    table_name = os.environ.get("DYNAMODB_TABLE") or store.get("table_name", "")

    return GatekeeperSettings(
        approval_policy=_freeze_policy(data.get("approval_policy")),
        accounts=MappingProxyType(
            {str(alias).upper(): str(sdlc).lower() for alias, sdlc in (data.get("accounts", {}) or {}).items()}
        ),
        groups=GroupSettings(**groups),
        email=EmailSettings(**email),
        store=StoreSettings(
            backend=store.get("backend", "memory"),
            table_name=table_name,
            region=store.get("region", "us-east-1"),
        ),
        sns_topic_arn=events.get("sns_topic_arn") or None,
        live_window_hours=int(data.get("live_window_hours", DEFAULT_LIVE_WINDOW_HOURS)),
        user_id_prefix=data.get("user_id_prefix", DEFAULT_USER_ID_PREFIX),
        audit_log_dir=data.get("audit_log_dir", "audit_logs"),
        config_hash=config_hash,
    )


def load_settings(config_path: Optional[str] = None) -> GatekeeperSettings:
    """
    Loads and parses the settings file.
    Calculates a SHA256 hash of the expanded content for audit integrity.
    """
    path = config_path or os.environ.get("GATEKEEPER_CONFIG", DEFAULT_CONFIG_PATH)
    try:
        with open(path, 'r') as file:
            raw_content = file.read()
    except OSError as e:
        raise ConfigurationError(f"Unable to read settings file {path}: {e}")

    # Hash the REAL content (post-expansion) so the audit log reflects the values actually used
    content = expand_env_vars(raw_content)
    config_hash = hashlib.sha256(content.encode('utf-8')).hexdigest()

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Settings file {path} is not valid YAML: {e}")

    try:
        return settings_from_dict(data, config_hash=config_hash)
    except TypeError as e:
        # Unknown keys inside groups/email sections
        raise ConfigurationError(f"Invalid settings in {path}: {e}")
