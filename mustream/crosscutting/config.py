import json
import os
import re
import threading
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Any, List, Optional

from dotenv import dotenv_values

from mustream.domain.sort_orders import DEFAULT_ALBUM_SORT, DEFAULT_ARTIST_SORT


SERVER_TYPE_SUBSONIC = 'Subsonic'
SERVER_TYPE_JELLYFIN = 'Jellyfin'
SERVER_TYPES = (SERVER_TYPE_SUBSONIC, SERVER_TYPE_JELLYFIN)


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass
class ServerConfig:
    """Connection settings for one media server. Secrets live in .env, not here."""
    nickname: str
    hostname: str
    username: str
    server_type: str = SERVER_TYPE_SUBSONIC
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    default: bool = False
    # Jellyfin only; resolved once at login time
    user_id: Optional[str] = None

    @property
    def secret_env_key(self) -> str:
        slug = re.sub(r'[^A-Za-z0-9]+', '_', self.nickname).strip('_').upper()
        return f"MUSTREAM_{slug}_SECRET"


@dataclass
class BrowseConfig:
    """Browsing and iteration settings."""
    album_sort_order: str = DEFAULT_ALBUM_SORT
    artist_sort_order: str = DEFAULT_ARTIST_SORT
    max_image_cache_size_mb: int = 50
    fetch_retries: int = 0
    retry_backoff_ms: int = 500
    prefetch_workers: int = 4


@dataclass
class AppConfig:
    servers: List[ServerConfig] = field(default_factory=list)
    browse: BrowseConfig = field(default_factory=BrowseConfig)


class ConfigManager:
    """Manages application configuration and server secrets."""

    def __init__(self, config_dir: Optional[str] = None):
        """Initialize config manager."""
        self.config_dir = Path(config_dir) if config_dir else Path.home() / '.mustream'
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self.config_file = self.config_dir / 'config.json'
        self.env_file = self.config_dir / '.env'
        self._write_lock = threading.Lock()

    def load_config(self) -> AppConfig:
        """Load configuration from config.json, falling back to defaults."""
        if not self.config_file.exists():
            return AppConfig()

        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            raise ConfigError(f"Failed to load config from {self.config_file}: {e}")

        try:
            servers = []
            for raw in data.get('servers', []):
                # Configs written before Jellyfin support have no server type
                if not raw.get('server_type'):
                    raw['server_type'] = SERVER_TYPE_SUBSONIC
                servers.append(ServerConfig(**raw))
            browse = BrowseConfig(**data.get('browse', {}))
        except TypeError as e:
            raise ConfigError(f"Invalid config in {self.config_file}: {e}")

        return AppConfig(servers=servers, browse=browse)

    def save_config(self, config: AppConfig) -> bool:
        """Save configuration to config.json.

        Returns False without writing if another save is in progress.
        """
        if not self._write_lock.acquire(blocking=False):
            return False
        try:
            with open(self.config_file, 'w') as f:
                json.dump(asdict(config), f, indent=2, ensure_ascii=False)
            return True
        except (IOError, TypeError) as e:
            raise ConfigError(f"Failed to save config to {self.config_file}: {e}")
        finally:
            self._write_lock.release()

    def add_server(self, server: ServerConfig) -> AppConfig:
        """Add a server, making it the default if it is the first or flagged as default."""
        if server.server_type not in SERVER_TYPES:
            raise ConfigError(f"Unsupported server type: {server.server_type}")

        config = self.load_config()
        if any(s.nickname == server.nickname for s in config.servers):
            raise ConfigError(f"Server '{server.nickname}' already exists")

        if not config.servers:
            server.default = True
        if server.default:
            for s in config.servers:
                s.default = False
        config.servers.append(server)
        self.save_config(config)
        return config

    def get_server(self, nickname: Optional[str] = None) -> ServerConfig:
        """Return the named server, or the default one when no name is given."""
        config = self.load_config()
        if not config.servers:
            raise ConfigError("No servers configured")

        if nickname:
            for s in config.servers:
                if s.nickname == nickname:
                    return s
            raise ConfigError(f"Server '{nickname}' not found")

        return self.get_default_server(config)

    def get_default_server(self, config: Optional[AppConfig] = None) -> ServerConfig:
        config = config or self.load_config()
        if not config.servers:
            raise ConfigError("No servers configured")
        for s in config.servers:
            if s.default:
                return s
        return config.servers[0]

    def load_env_vars(self) -> Dict[str, str]:
        """Load variables from the .env file."""
        if not self.env_file.exists():
            return {}
        return {k: v for k, v in dotenv_values(self.env_file).items() if v is not None}

    def get_server_secret(self, server: ServerConfig) -> str:
        """Get the password (Subsonic) or access token (Jellyfin) for a server.

        The process environment wins over the .env file.
        """
        key = server.secret_env_key
        secret = os.getenv(key) or self.load_env_vars().get(key)
        if not secret:
            raise ConfigError(f"{key} not found in environment or {self.env_file}")
        return secret

    def save_server_secret(self, server: ServerConfig, secret: str) -> None:
        """Store a server secret in the .env file."""
        env_vars = self.load_env_vars()
        env_vars[server.secret_env_key] = secret
        try:
            with open(self.env_file, 'w') as f:
                for key, value in env_vars.items():
                    f.write(f"{key}={value}\n")
        except IOError as e:
            raise ConfigError(f"Failed to save .env file {self.env_file}: {e}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        config = self.load_config()
        env_vars = self.load_env_vars()

        return {
            'config_dir': str(self.config_dir),
            'config_file': str(self.config_file),
            'env_file': str(self.env_file),
            'servers': [
                {
                    'nickname': s.nickname,
                    'server_type': s.server_type,
                    'hostname': s.hostname,
                    'default': s.default,
                    'has_secret': bool(os.getenv(s.secret_env_key) or env_vars.get(s.secret_env_key)),
                }
                for s in config.servers
            ],
            'browse': asdict(config.browse),
        }


# Global instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def setup_config(config_dir: Optional[str] = None) -> ConfigManager:
    """Setup configuration with custom directory."""
    global _config_manager
    _config_manager = ConfigManager(config_dir)
    return _config_manager
