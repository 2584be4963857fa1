"""Unit tests for the credential directory."""
import configparser

import pytest

from spatch.core.directory import DirectoryError, load_directory, parse_directory


def _parse(text):
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(text)
    return parse_directory(parser)


class TestLoadDirectory:
    """Loading the INI directory file"""

    def test_load_from_file(self, directory_file):
        directory = load_directory(str(directory_file))
        assert [b.name for b in directory.backends] == ['web', 'db', 'cache']
        assert {u.username for u in directory.users} == {'alice', 'bob', 'carol'}

    def test_backend_fields(self, directory):
        web, db, cache = directory.backends
        assert web.display_address == 'web.example'
        assert web.host == '10.0.0.10'
        assert web.port == 22
        assert db.port == 2222

    def test_missing_file(self, tmp_path):
        with pytest.raises(DirectoryError):
            load_directory(str(tmp_path / 'nope.conf'))

    def test_duplicate_grant_section_rejected(self, tmp_path):
        path = tmp_path / 'dup.conf'
        path.write_text(
            "[backend:web]\nhost = h\n[user:a]\npassword = p\n"
            "[grant:a:web]\nusername = x\npassword = y\n"
            "[grant:a:web]\nusername = z\npassword = w\n"
        )
        with pytest.raises(DirectoryError):
            load_directory(str(path))

    def test_grant_for_unknown_backend(self):
        with pytest.raises(DirectoryError, match="unknown backend"):
            _parse("[user:a]\npassword = p\n[grant:a:ghost]\nusername = x\npassword = y\n")

    def test_grant_for_unknown_user(self):
        with pytest.raises(DirectoryError, match="unknown user"):
            _parse("[backend:web]\nhost = h\n[grant:ghost:web]\nusername = x\npassword = y\n")

    def test_backend_without_host(self):
        with pytest.raises(DirectoryError, match="host"):
            _parse("[backend:web]\naddress = web\n")

    def test_duplicate_display_address(self):
        with pytest.raises(DirectoryError, match="Display address"):
            _parse("[backend:a]\naddress = x\nhost = h1\n[backend:b]\naddress = x\nhost = h2\n")

    def test_address_defaults_to_name(self):
        directory = _parse("[backend:web]\nhost = h\n")
        assert directory.backends[0].display_address == 'web'


class TestCredentialDirectory:
    """Lookups used by sessions"""

    def test_authenticate(self, directory):
        user = directory.authenticate('alice', 'alice-pw')
        assert user is not None
        assert user.username == 'alice'

    def test_authenticate_wrong_password(self, directory):
        assert directory.authenticate('alice', 'bob-pw') is None

    def test_authenticate_unknown_user(self, directory):
        assert directory.authenticate('mallory', 'x') is None

    def test_grants_follow_backend_order(self, directory):
        # alice's grants are declared db first, menu order is web, db
        alice = directory.get_user('alice')
        addresses = [g.backend.display_address for g in directory.grants_for(alice)]
        assert addresses == ['web.example', 'db.example']

    def test_user_without_grants(self, directory):
        carol = directory.get_user('carol')
        assert directory.grants_for(carol) == []

    def test_find_grant_returns_users_own_credentials(self, directory):
        alice = directory.get_user('alice')
        bob = directory.get_user('bob')

        alice_web = directory.find_grant(alice, 'web.example')
        bob_web = directory.find_grant(bob, 'web.example')

        assert (alice_web.username, alice_web.password) == ('deploy', 'alice-web')
        assert (bob_web.username, bob_web.password) == ('bob', 'bob-web')

    def test_find_grant_not_granted(self, directory):
        bob = directory.get_user('bob')
        assert directory.find_grant(bob, 'db.example') is None
        assert directory.find_grant(bob, 'nowhere') is None

    def test_allowed_users(self, directory):
        web, db, cache = directory.backends
        assert sorted(directory.allowed_users(web)) == ['alice', 'bob']
        assert directory.allowed_users(db) == ['alice']
        assert directory.allowed_users(cache) == []

    def test_grant_repr_hides_password(self, directory):
        alice = directory.get_user('alice')
        grant = directory.find_grant(alice, 'web.example')
        assert 'alice-web' not in repr(grant)
