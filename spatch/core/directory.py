"""Credential Directory - gateway users, backends and grants.

Loaded once at startup from an INI file and shared read-only by every
session. Example::

    [backend:web]
    address = web.example
    host = 10.0.0.5
    port = 22

    [user:alice]
    password = s3cret

    [grant:alice:web]
    username = deploy
    password = deploy-pass
"""
import configparser
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Credential directory file is missing or inconsistent."""
    pass


@dataclass(frozen=True)
class Backend:
    """Upstream SSH server reachable through the gateway."""

    name: str
    display_address: str
    host: str
    port: int = 22


@dataclass(frozen=True)
class Grant:
    """Authorizes one gateway user to reach one backend with its own login."""

    backend: Backend
    username: str
    password: str

    def __repr__(self):
        return f'<Grant {self.username}@{self.backend.display_address}>'


@dataclass(frozen=True)
class GatewayUser:
    """Identity used to authenticate against the gateway."""

    username: str
    password: str
    grants: Tuple[Grant, ...] = ()

    def __repr__(self):
        return f'<GatewayUser {self.username} grants={len(self.grants)}>'


class CredentialDirectory:
    """Read-only lookup of users, backends and grants.

    Backends keep their declaration order, and each user's grants follow
    that same order, so menus are deterministic.
    """

    def __init__(self, backends: List[Backend], users: List[GatewayUser]):
        self._backends = tuple(backends)
        self._users: Dict[str, GatewayUser] = {}
        for user in users:
            if user.username in self._users:
                raise DirectoryError(f"Duplicate gateway user '{user.username}'")
            seen = set()
            for grant in user.grants:
                if grant.backend.name in seen:
                    raise DirectoryError(
                        f"User '{user.username}' has more than one grant for backend '{grant.backend.name}'"
                    )
                seen.add(grant.backend.name)
            self._users[user.username] = user

    @property
    def backends(self) -> Tuple[Backend, ...]:
        return self._backends

    @property
    def users(self) -> Tuple[GatewayUser, ...]:
        return tuple(self._users.values())

    def get_user(self, username: str) -> Optional[GatewayUser]:
        return self._users.get(username)

    def authenticate(self, username: str, password: str) -> Optional[GatewayUser]:
        """Return the gateway user matching both username and password, or None."""
        user = self._users.get(username)
        if user is None:
            return None
        if not hmac.compare_digest(user.password.encode('utf-8'), password.encode('utf-8')):
            return None
        return user

    def grants_for(self, user: GatewayUser) -> List[Grant]:
        """Grants of a user, in backend declaration order."""
        by_backend = {grant.backend.name: grant for grant in user.grants}
        return [by_backend[b.name] for b in self._backends if b.name in by_backend]

    def find_grant(self, user: GatewayUser, display_address: str) -> Optional[Grant]:
        """Grant of this user for the backend shown as display_address."""
        for grant in self.grants_for(user):
            if grant.backend.display_address == display_address:
                return grant
        return None

    def allowed_users(self, backend: Backend) -> List[str]:
        """Per-backend ACL: gateway users holding a grant for backend."""
        return [
            user.username for user in self._users.values()
            if any(grant.backend.name == backend.name for grant in user.grants)
        ]

    def __repr__(self):
        return f'<CredentialDirectory backends={len(self._backends)} users={len(self._users)}>'


def _require(parser: configparser.ConfigParser, section: str, option: str) -> str:
    try:
        return parser.get(section, option)
    except configparser.NoOptionError:
        raise DirectoryError(f"Section [{section}] is missing '{option}'")


def parse_directory(parser: configparser.ConfigParser) -> CredentialDirectory:
    """Build a CredentialDirectory from an already read ConfigParser."""
    backends: Dict[str, Backend] = {}
    passwords: Dict[str, str] = {}
    grants: Dict[str, List[Grant]] = {}

    for section in parser.sections():
        kind, _, name = section.partition(':')
        if kind == 'backend':
            address = parser.get(section, 'address', fallback=name)
            if any(b.display_address == address for b in backends.values()):
                raise DirectoryError(f"Display address '{address}' is used by more than one backend")
            try:
                port = parser.getint(section, 'port', fallback=22)
            except ValueError:
                raise DirectoryError(f"Section [{section}] has an invalid port")
            backends[name] = Backend(
                name=name,
                display_address=address,
                host=_require(parser, section, 'host'),
                port=port
            )
        elif kind == 'user':
            passwords[name] = _require(parser, section, 'password')
            grants.setdefault(name, [])

    for section in parser.sections():
        kind, _, rest = section.partition(':')
        if kind != 'grant':
            continue
        username, _, backend_name = rest.partition(':')
        if username not in passwords:
            raise DirectoryError(f"Grant [{section}] refers to unknown user '{username}'")
        if backend_name not in backends:
            raise DirectoryError(f"Grant [{section}] refers to unknown backend '{backend_name}'")
        grants[username].append(Grant(
            backend=backends[backend_name],
            username=_require(parser, section, 'username'),
            password=_require(parser, section, 'password')
        ))

    order = {name: idx for idx, name in enumerate(backends)}
    users = []
    for username, password in passwords.items():
        user_grants = sorted(grants[username], key=lambda g: order[g.backend.name])
        users.append(GatewayUser(username=username, password=password, grants=tuple(user_grants)))

    return CredentialDirectory(list(backends.values()), users)


def load_directory(path: str) -> CredentialDirectory:
    """Load the credential directory file.

    Raises:
        DirectoryError: file missing, duplicated sections or broken references
    """
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(path, encoding='utf-8') as f:
            parser.read_file(f)
    except OSError as e:
        raise DirectoryError(f"Cannot read directory file {path}: {e}")
    except configparser.Error as e:
        raise DirectoryError(f"Invalid directory file {path}: {e}")

    directory = parse_directory(parser)
    logger.info(f"Loaded {len(directory.users)} users and {len(directory.backends)} backends from {path}")
    return directory
