"""
Configuration management with TOML + environment variable support.

Configuration hierarchy (later overrides earlier):
1. Default values in code
2. TOML file
3. Environment variables (BUCKET_* prefix)

A couple of unprefixed variables are honored for compatibility with the
deployment environment: DEBUG_MODE and NODE_ENV. BUCKET_ENV and
BUCKET_DEBUG_MODE are accepted as short forms of bucket.env and
bucket.debug_mode.
"""
import os
import tomllib
from pathlib import Path
from typing import Any, Optional

TRUTHY = ("true", "1", "yes", "on")
FALSY = ("false", "0", "no", "off")


class ConfigManager:
    """TOML + env var configuration for Bucket.

    Usage:
        config = ConfigManager(Path("config/default.toml"))
        interval = config.get_int("monitor.health_check_interval_ms", 60000)
        keywords = config.get_list("retry.retryable_keywords")
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        env_prefix: str = "BUCKET_",
        environ: Optional[dict[str, str]] = None,
    ) -> None:
        """Initialize ConfigManager.

        Args:
            config_path: Path to TOML config file (optional)
            env_prefix: Prefix for environment variable overrides
            environ: Environment mapping (defaults to os.environ)
        """
        self._data: dict[str, Any] = {}
        self._env_prefix = env_prefix
        self._environ = environ if environ is not None else os.environ
        self._config_path = config_path

        if config_path and config_path.exists():
            self._load_toml(config_path)

    def _load_toml(self, path: Path) -> None:
        with open(path, "rb") as f:
            self._data = tomllib.load(f)

    def _lookup(self, key: str) -> tuple[bool, Any]:
        """Resolve a dotted key inside the loaded TOML tree."""
        current: Any = self._data
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return False, None
            current = current[part]
        return True, current

    def env_key(self, key: str) -> str:
        """Environment variable name for a dotted key.

        "monitor.health_check_interval_ms" -> "BUCKET_MONITOR_HEALTH_CHECK_INTERVAL_MS"
        """
        return self._env_prefix + key.upper().replace(".", "_")

    @staticmethod
    def parse_env_value(value: str) -> Any:
        """Convert an environment string to bool, int, float, list or str."""
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        lowered = value.strip().lower()
        if lowered in TRUTHY:
            return True
        if lowered in FALSY:
            return False

        if "," in value:
            return [v.strip() for v in value.split(",") if v.strip()]

        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with dot notation.

        Environment variables take precedence over TOML values.
        """
        env_key = self.env_key(key)
        if env_key in self._environ:
            return self.parse_env_value(self._environ[env_key])

        found, value = self._lookup(key)
        if found:
            return value

        return default

    def get_section(self, section: str) -> dict[str, Any]:
        """Get a TOML section merged with any BUCKET_<SECTION>_* overrides."""
        found, value = self._lookup(section)
        merged: dict[str, Any] = dict(value) if found and isinstance(value, dict) else {}

        prefix = self.env_key(section) + "_"
        for env_key, raw in self._environ.items():
            if env_key.startswith(prefix):
                merged[env_key[len(prefix):].lower()] = self.parse_env_value(raw)
        return merged

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in TRUTHY
        return bool(value)

    def get_int(self, key: str, default: int = 0) -> int:
        value = self.get(key)
        if value is None:
            return default
        return int(value)

    def get_float(self, key: str, default: float = 0.0) -> float:
        value = self.get(key)
        if value is None:
            return default
        return float(value)

    def get_list(self, key: str, default: Optional[list[Any]] = None) -> list[Any]:
        """Get a list value; comma-separated strings are split."""
        if default is None:
            default = []
        value = self.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [value]

    @property
    def debug_enabled(self) -> bool:
        """Whether debug-level logging should be emitted.

        True when running in development (BUCKET_ENV, bucket.env or NODE_ENV)
        or when debug mode is switched on (BUCKET_DEBUG_MODE, bucket.debug_mode
        or DEBUG_MODE).
        """
        env = self._environ.get(f"{self._env_prefix}ENV")
        if env is None:
            env = str(self.get("bucket.env", self._environ.get("NODE_ENV", "production")))
        if env.strip().lower() == "development":
            return True

        flag = self._environ.get(f"{self._env_prefix}DEBUG_MODE")
        if flag is not None:
            return flag.strip().lower() in TRUTHY
        if self.get_bool("bucket.debug_mode"):
            return True
        return self._environ.get("DEBUG_MODE", "").strip().lower() == "true"

    def set(self, key: str, value: Any) -> None:
        """Set a value in the loaded tree (command-line overrides).

        Environment variables still take precedence.
        """
        current = self._data
        *parents, leaf = key.split(".")
        for part in parents:
            current = current.setdefault(part, {})
        current[leaf] = value

    def reload(self) -> None:
        """Reload configuration from the TOML file."""
        if self._config_path and self._config_path.exists():
            self._load_toml(self._config_path)

    @property
    def raw_data(self) -> dict[str, Any]:
        """Raw TOML data (for debugging)."""
        return self._data.copy()
