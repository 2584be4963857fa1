"""Gateway configuration loader.

Loads spatch configuration from spatch.conf file.
"""

import os
import configparser


DEFAULT_SEARCH_PATHS = [
    '/etc/spatch/spatch.conf',
    './config/spatch.conf'
]


class GateConfig:
    """Gateway configuration from spatch.conf file."""

    def __init__(self, config_path=None):
        """Load configuration from file.

        Args:
            config_path: Path to spatch.conf file. If None, searches in:
                1. SPATCH_CONFIG environment variable
                2. /etc/spatch/spatch.conf
                3. ./config/spatch.conf
        """
        if config_path is None:
            config_path_env = os.getenv('SPATCH_CONFIG')
            if config_path_env and os.path.exists(config_path_env):
                config_path = config_path_env
            else:
                for path in DEFAULT_SEARCH_PATHS:
                    if os.path.exists(path):
                        config_path = path
                        break

                if config_path is None:
                    raise FileNotFoundError('spatch.conf not found in standard locations')

        if not os.path.exists(config_path):
            raise FileNotFoundError(f'Config file not found: {config_path}')

        self.config_path = config_path
        self.config = configparser.ConfigParser()
        self.config.read(config_path)

        # Gateway identification and files
        self.gate_name = self.config.get('gate', 'name', fallback='spatch')
        self.host_key_path = self.config.get('gate', 'host_key_path', fallback='/etc/spatch/ssh_host_rsa_key')
        self.known_hosts_path = self.config.get('gate', 'known_hosts_path', fallback='/var/lib/spatch/known_hosts')
        self.directory_path = self.config.get('gate', 'directory_path', fallback='/etc/spatch/directory.conf')

        # Listener
        self.listen_host = self.config.get('proxy', 'host', fallback='0.0.0.0')
        self.listen_port = self.config.getint('proxy', 'port', fallback=2222)
        self.backlog = self.config.getint('proxy', 'backlog', fallback=100)

        # Per-session settings
        self.auth_attempts = self.config.getint('session', 'auth_attempts', fallback=3)
        self.setup_timeout = self.config.getfloat('session', 'setup_timeout', fallback=30.0)
        self.status_interval = self.config.getint('session', 'status_interval', fallback=15)
        self.poll_interval = self.config.getint('session', 'poll_interval_ms', fallback=10) / 1000.0
        self.buffer_size = self.config.getint('session', 'buffer_size', fallback=2048)

        # Upstream connections
        self.connect_timeout = self.config.getfloat('backend', 'connect_timeout', fallback=10.0)
        self.pty_width = self.config.getint('backend', 'pty_width', fallback=116)
        self.pty_height = self.config.getint('backend', 'pty_height', fallback=64)
        self.default_term = self.config.get('backend', 'default_term', fallback='xterm')

        # Logging settings
        self.log_level = self.config.get('logging', 'level', fallback='INFO')
        self.log_file = self.config.get('logging', 'file', fallback=None)
        self.log_max_size = self.config.getint('logging', 'max_size', fallback=10485760)
        self.log_backup_count = self.config.getint('logging', 'backup_count', fallback=5)

        if self.auth_attempts < 1:
            raise ValueError(f'auth_attempts must be at least 1, got {self.auth_attempts}')

    def __repr__(self):
        return f'<GateConfig gate_name={self.gate_name} listen={self.listen_host}:{self.listen_port}>'


# Global config instance
_config = None


def get_config(config_path=None):
    """Get global gateway configuration instance.

    Args:
        config_path: Optional path to config file. Only used on first call.

    Returns:
        GateConfig instance
    """
    global _config
    if _config is None:
        _config = GateConfig(config_path)
    return _config

