import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

LOG = logging.getLogger(__name__)

# Used only when ConfigManager gets no explicit path; hosts normally pass their own.
CONFIG_FILE = os.path.join(os.path.expanduser("~"), ".mediacache.json")

DEFAULT_CONFIG = {
    "proxy_buffer_size": 64 * 1024,  # bytes copied per relay chunk
    "proxy_connect_timeout_ms": 3000,
    "proxy_read_timeout_ms": 3000,
    "proxy_cache_dir": "",  # empty => host must call set_cache_dir()
    "proxy_concurrent": True,  # one thread per connection; False = serve inside the loop
    "proxy_forward_host_header": True,  # send the client's Host to the origin
    "proxy_max_request_bytes": 64 * 1024,
    "proxy_poll_interval": 0.25,  # seconds between stop checks
    "proxy_coalesce_wait_ms": 3000,  # how long a waiting request trusts another one's fetch
    "proxy_debug_logs": False,
}


class ConfigManager:
    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding="utf-8") as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except (OSError, ValueError) as e:
                LOG.warning("Error loading config %s: %s", self.config_file, e)
                return dict(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = cfg if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def save_config(self) -> None:
        try:
            with open(self.config_file, 'w', encoding="utf-8") as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            LOG.warning("Error saving config %s: %s", self.config_file, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value) -> None:
        self.config[key] = value
        self.save_config()

    def proxy_options(self) -> "ProxyOptions":
        return ProxyOptions.from_config(self.config)


@dataclass
class ProxyOptions:
    buffer_size: int = DEFAULT_CONFIG["proxy_buffer_size"]
    connect_timeout_ms: int = DEFAULT_CONFIG["proxy_connect_timeout_ms"]
    read_timeout_ms: int = DEFAULT_CONFIG["proxy_read_timeout_ms"]
    cache_dir: str = DEFAULT_CONFIG["proxy_cache_dir"]
    concurrent: bool = DEFAULT_CONFIG["proxy_concurrent"]
    forward_host_header: bool = DEFAULT_CONFIG["proxy_forward_host_header"]
    max_request_bytes: int = DEFAULT_CONFIG["proxy_max_request_bytes"]
    poll_interval: float = DEFAULT_CONFIG["proxy_poll_interval"]
    coalesce_wait_ms: int = DEFAULT_CONFIG["proxy_coalesce_wait_ms"]
    debug_logs: bool = DEFAULT_CONFIG["proxy_debug_logs"]

    def __post_init__(self) -> None:
        self.buffer_size = max(1024, int(self.buffer_size))
        self.connect_timeout_ms = max(1, int(self.connect_timeout_ms))
        self.read_timeout_ms = max(1, int(self.read_timeout_ms))
        self.cache_dir = str(self.cache_dir or "")
        self.concurrent = bool(self.concurrent)
        self.forward_host_header = bool(self.forward_host_header)
        self.max_request_bytes = max(1024, int(self.max_request_bytes))
        self.poll_interval = max(0.01, float(self.poll_interval))
        self.coalesce_wait_ms = max(0, int(self.coalesce_wait_ms))
        self.debug_logs = bool(self.debug_logs)

    @property
    def timeout(self):
        """(connect, read) tuple in seconds, the shape requests expects."""
        return (self.connect_timeout_ms / 1000.0, self.read_timeout_ms / 1000.0)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "ProxyOptions":
        kwargs = {}
        for key, default in DEFAULT_CONFIG.items():
            kwargs[key[len("proxy_"):]] = cfg.get(key, default)
        return cls(**kwargs)
