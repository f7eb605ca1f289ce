"""
Configuration schema validation for the SC Event Tracker.

Validates that all required config files exist and contain required keys.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields and a usable reconciliation interval."""
    errors = _check_keys(
        config,
        [
            "reconciliation.interval_seconds",
            "supervisor.poll_interval_seconds",
            "supervisor.stop_timeout_seconds",
            "listener.max_jitter_seconds",
            "listener.dedup_ttl_seconds",
        ],
        "timing.json",
    )
    if not errors:
        if float(config["reconciliation"]["interval_seconds"]) <= 0:
            errors.append("reconciliation.interval_seconds: must be positive")
        if int(config["listener"]["dedup_ttl_seconds"]) <= 0:
            errors.append("listener.dedup_ttl_seconds: must be positive")
    return errors


def validate_redis_config(config: dict[str, Any]) -> list[str]:
    """Validate redis.json has a connection URL and every key template."""
    return _check_keys(
        config,
        [
            "redis_url",
            "keys.containers",
            "keys.container_processes",
            "keys.process",
            "keys.container_heartbeat",
            "keys.processed_tx",
        ],
        "redis.json",
    )


def validate_services_config(config: dict[str, Any]) -> list[str]:
    """Validate services.json has the directory / execution endpoints."""
    errors = _check_keys(
        config,
        [
            "service_url",
            "directory_path",
            "execute_path",
        ],
        "services.json",
    )
    if not errors and "{workflow_id}" not in config["execute_path"]:
        errors.append("execute_path: must contain {workflow_id}")
    return errors


def validate_websocket_config(config: dict[str, Any]) -> list[str]:
    """Validate websocket.json has required fields."""
    return _check_keys(
        config,
        [
            "connection.max_connection_attempts",
            "timeouts.subscription_response_timeout_seconds",
            "reconnection.base_delay_seconds",
        ],
        "websocket.json",
    )


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "redis.json": (loader.get_redis_config, validate_redis_config),
        "services.json": (loader.get_services_config, validate_services_config),
        "websocket.json": (loader.get_websocket_config, validate_websocket_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))
