# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Configuration from environment variables with validation.

Connections and the proxy setting live in the data store and are edited at
runtime through the API; only process-level settings come from here.
"""

import logging
import os

logger = logging.getLogger(__name__)

_TRUE = ("true", "1", "yes")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.data_dir = os.environ.get("BRIDGE_DATA_DIR", "/data")
        self.log_level = os.environ.get("BRIDGE_LOG_LEVEL", "INFO")
        self.web_port = self._int("BRIDGE_WEB_PORT", "8080", 1, 65535)
        self.mock_mode = self._bool("BRIDGE_MOCK_MODE", "false")

        # HTTP session applied to every BMC request
        self.http_timeout = self._float("BRIDGE_HTTP_TIMEOUT", "10", 0.5, 300)
        self.verify_tls = self._bool("BRIDGE_VERIFY_TLS", "false")

        # Forwarding proxy defaults (overridden by the persisted setting)
        self.proxy_url = os.environ.get("REDFISH_PROXY_URL", "http://localhost:8443")
        self.proxy_enabled = self._bool("REDFISH_PROXY_ENABLED", "false")

        self.mqtt_enabled = self._bool("MQTT_ENABLED", "true")
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")

        if not self.proxy_url.startswith(("http://", "https://")):
            raise ConfigError(
                f"REDFISH_PROXY_URL must start with http:// or https://, got {self.proxy_url!r}"
            )
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"BRIDGE_LOG_LEVEL={self.log_level!r} is not a log level")

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _bool(env: str, default: str) -> bool:
        return os.environ.get(env, default).lower() in _TRUE

    @property
    def settings_dict(self) -> dict:
        """Non-secret settings (for GET /api/health)."""
        return {
            "data_dir": self.data_dir,
            "log_level": self.log_level,
            "web_port": self.web_port,
            "mock_mode": self.mock_mode,
            "http_timeout": self.http_timeout,
            "verify_tls": self.verify_tls,
            "mqtt_enabled": self.mqtt_enabled,
            "mqtt_broker": self.mqtt_broker,
            "mqtt_port": self.mqtt_port,
        }

    def _log_config(self):
        logger.info(
            "Config: data=%s mock=%s timeout=%.1fs verify_tls=%s proxy=%s(%s) mqtt=%s:%d(%s)",
            self.data_dir, self.mock_mode, self.http_timeout, self.verify_tls,
            self.proxy_url, "on" if self.proxy_enabled else "off",
            self.mqtt_broker, self.mqtt_port, "on" if self.mqtt_enabled else "off",
        )
