from types import MappingProxyType
from typing import Dict, Any, List, Mapping, Optional
import json
import os

class ProxyConfig:
    """Read-only configuration for the development proxy."""

    def __init__(self, config_path: str = None, **overrides: Any):
        """
        Initialize configuration with optional config file path.

        Args:
            config_path: Path to JSON configuration file
            overrides: Individual keys that take precedence over the file
        """
        self.config_path = config_path
        defaults = self._load_default_config()
        config = dict(defaults)

        if config_path:
            config.update(self._load_config_file())
        config.update({k: v for k, v in overrides.items() if v is not None})

        unknown = set(config) - set(defaults)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        self._config = MappingProxyType(config)

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "localhost",
            "port": 3000,
            "backend_host": "localhost",
            "backend_port": 5001,
            "static_root": "public",
            "timeout": 30,
            "health_timeout": 5,
            "health_path": "/health",
            "mime_types": {
                ".html": "text/html",
                ".js": "application/javascript",
                ".css": "text/css",
                ".json": "application/json",
                ".png": "image/png",
                ".jpg": "image/jpeg",
                ".gif": "image/gif",
                ".svg": "image/svg+xml",
                ".ico": "image/x-icon"
            },
            "default_mime_type": "text/plain",
            "backend_endpoints": [
                "/api/", "/download-tool", "/models/", "/chat/", "/health", "/status"
            ],
            "sensitive_marker": "download-tool",
            "cors_headers": {
                "Access-Control-Allow-Origin": "*",
                "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, Authorization"
            },
            "max_connections": None,
            "backlog": 128,
            "buffer_size": 4096,
            "log_level": "INFO"
        }

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration from JSON file."""
        if not os.path.exists(self.config_path):
            raise ValueError(f"Config file not found: {self.config_path}")
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
        except Exception as e:
            raise ValueError(f"Error loading config file: {e}")
        if not isinstance(file_config, dict):
            raise ValueError("Config file must contain a JSON object")
        return file_config

    @property
    def host(self) -> str:
        return self._config["host"]

    @property
    def port(self) -> int:
        return int(self._config["port"])

    @property
    def backend_host(self) -> str:
        return self._config["backend_host"]

    @property
    def backend_port(self) -> int:
        return int(self._config["backend_port"])

    @property
    def backend_address(self) -> str:
        """Value used for the Host header on backend requests."""
        return f"{self.backend_host}:{self.backend_port}"

    @property
    def static_root(self) -> str:
        return self._config["static_root"]

    @property
    def timeout(self) -> float:
        return float(self._config["timeout"])

    @property
    def health_timeout(self) -> float:
        return float(self._config["health_timeout"])

    @property
    def health_path(self) -> str:
        return self._config["health_path"]

    @property
    def mime_types(self) -> Mapping[str, str]:
        return MappingProxyType(self._config["mime_types"])

    @property
    def default_mime_type(self) -> str:
        return self._config["default_mime_type"]

    @property
    def backend_endpoints(self) -> List[str]:
        return list(self._config["backend_endpoints"])

    @property
    def sensitive_marker(self) -> str:
        return self._config["sensitive_marker"]

    @property
    def cors_headers(self) -> Dict[str, str]:
        """Get the CORS headers applied to every response."""
        return dict(self._config["cors_headers"])

    @property
    def max_connections(self) -> Optional[int]:
        value = self._config["max_connections"]
        return int(value) if value else None

    @property
    def backlog(self) -> int:
        return int(self._config["backlog"])

    @property
    def buffer_size(self) -> int:
        return int(self._config["buffer_size"])

    @property
    def log_level(self) -> str:
        return str(self._config["log_level"]).upper()
