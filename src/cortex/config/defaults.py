"""Default configuration values for Cortex."""

from __future__ import annotations

DEFAULT_CONFIG: dict[str, dict[str, object]] = {
    "cortex": {
        "version": "0.1.0",
        "data_dir": "~/.local/share/cortex",
        "log_level": "info",
        "log_format": "text",
        "log_file": "~/.local/share/cortex/cortex.log",
    },
    "store": {
        "sqlite_path": "~/.local/share/cortex/cortex.db",
        "kv_backend": "memory",
        "redis_url": "redis://localhost:6379/0",
        "key_prefix": "cortex:",
    },
    "events": {
        "dedupe_ttl_seconds": 7 * 24 * 3600,
        "event_ttl_seconds": 7 * 24 * 3600,
    },
    "cache": {
        "entity_ttl_seconds": 24 * 3600,
        "fetch_dedup_ttl_seconds": 3600,
        "max_body_bytes": 5 * 1024,
        "recent_limit": 5,
    },
    "runtime": {
        "sweep_interval_seconds": 30.0,
        "max_concurrent_runs": 16,
        "classifier_timeout_seconds": 15.0,
        "tool_timeout_seconds": 60.0,
        "schedule_enabled": True,
    },
    "ollama": {
        "enabled": False,
        "host": "localhost",
        "port": 11434,
        "model": "llama3.1:8b",
        "classifier_model": "llama3.2",
        "timeout_seconds": 120.0,
    },
    "notify": {
        "webhook_url": "",
        "timeout_seconds": 10.0,
    },
}
