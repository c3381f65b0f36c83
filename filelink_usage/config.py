"""Configuration for the file link usage tracker.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``FILELINK_USAGE_*`` prefix.
    Scan frequency and verbose logging can also be overridden at runtime
    through the settings store (see ``LinkUsageStorage.get_setting``).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

FREQUENCIES = ("off", "hourly", "daily", "weekly", "monthly", "yearly")


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Central configuration for the scanner, scheduler and admin API."""

    # Storage
    db_path: str = ""  # resolved in load_config()

    # API
    # Security: bind to localhost by default. Override with FILELINK_USAGE_HOST if needed.
    api_host: str = "127.0.0.1"
    api_port: int = 8790
    api_key: str = ""  # Required for authenticated access
    audit_log: str = ""

    # Scanning
    scan_frequency: str = "yearly"
    verbose_logging: bool = False
    batch_size: int = 100
    render_fallback: bool = False

    # Ledger namespace; every usage record written by this tracker carries it
    namespace: str = "filelink_usage"

    # Mount prefixes that map to the canonical schemes
    public_prefix: str = "/sites/default/files/"
    private_prefix: str = "/system/files/"

    owner_types: List[str] = field(
        default_factory=lambda: ["node", "block_content", "taxonomy_term", "comment", "paragraph"]
    )
    # Owner types recorded under a different name in the ledger
    type_aliases: Dict[str, str] = field(default_factory=lambda: {"block_content": "block"})

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.scan_frequency not in FREQUENCIES:
            errors.append(
                f"FILELINK_USAGE_SCAN_FREQUENCY must be one of {', '.join(FREQUENCIES)}"
            )
        if self.batch_size < 1:
            errors.append("FILELINK_USAGE_BATCH_SIZE must be >= 1")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("FILELINK_USAGE_PORT must be 1-65535")
        if not self.namespace:
            errors.append("FILELINK_USAGE_NAMESPACE must not be empty")
        for name, prefix in (("PUBLIC", self.public_prefix), ("PRIVATE", self.private_prefix)):
            if not prefix.startswith("/") or not prefix.endswith("/"):
                errors.append(f"FILELINK_USAGE_{name}_PREFIX must start and end with '/'")
        if not self.owner_types:
            errors.append("FILELINK_USAGE_OWNER_TYPES must list at least one type")
        return errors


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        FILELINK_USAGE_CONFIG
        FILELINK_USAGE_DB
        FILELINK_USAGE_HOST
        FILELINK_USAGE_PORT
        FILELINK_USAGE_API_KEY
        FILELINK_USAGE_AUDIT_LOG
        FILELINK_USAGE_SCAN_FREQUENCY
        FILELINK_USAGE_VERBOSE
        FILELINK_USAGE_BATCH_SIZE
        FILELINK_USAGE_RENDER_FALLBACK
        FILELINK_USAGE_NAMESPACE
        FILELINK_USAGE_PUBLIC_PREFIX
        FILELINK_USAGE_PRIVATE_PREFIX
        FILELINK_USAGE_OWNER_TYPES   (comma-separated)
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("FILELINK_USAGE_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if not hasattr(cfg, key):
                continue
            current = getattr(cfg, key)
            try:
                if isinstance(current, bool):
                    setattr(cfg, key, val if isinstance(val, bool) else _parse_bool(val))
                elif isinstance(current, list):
                    setattr(cfg, key, list(val) if isinstance(val, list) else _split_csv(str(val)))
                elif isinstance(current, dict):
                    if isinstance(val, dict):
                        setattr(cfg, key, {str(k): str(v) for k, v in val.items()})
                else:
                    setattr(cfg, key, type(current)(val))
            except (ValueError, TypeError):
                pass  # skip bad values

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "FILELINK_USAGE_DB": ("db_path", str),
        "FILELINK_USAGE_HOST": ("api_host", str),
        "FILELINK_USAGE_PORT": ("api_port", int),
        "FILELINK_USAGE_API_KEY": ("api_key", str),
        "FILELINK_USAGE_AUDIT_LOG": ("audit_log", str),
        "FILELINK_USAGE_SCAN_FREQUENCY": ("scan_frequency", str),
        "FILELINK_USAGE_VERBOSE": ("verbose_logging", _parse_bool),
        "FILELINK_USAGE_BATCH_SIZE": ("batch_size", int),
        "FILELINK_USAGE_RENDER_FALLBACK": ("render_fallback", _parse_bool),
        "FILELINK_USAGE_NAMESPACE": ("namespace", str),
        "FILELINK_USAGE_PUBLIC_PREFIX": ("public_prefix", str),
        "FILELINK_USAGE_PRIVATE_PREFIX": ("private_prefix", str),
        "FILELINK_USAGE_OWNER_TYPES": ("owner_types", _split_csv),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                pass

    cfg.scan_frequency = cfg.scan_frequency.strip().lower()

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".filelink-usage" / "filelink_usage.sqlite")

    return cfg
