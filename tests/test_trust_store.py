"""Unit tests for the known hosts trust store."""
import threading

import pytest

from spatch.core import trust_store
from spatch.core.trust_store import HostKeyConflict, TrustStore, format_fingerprint, host_identity


@pytest.fixture
def store(tmp_path):
    return TrustStore(str(tmp_path / 'known_hosts'))


def test_host_identity():
    assert host_identity('10.0.0.1') == '10.0.0.1'
    assert host_identity('10.0.0.1', 22) == '10.0.0.1'
    assert host_identity('10.0.0.1', 2222) == '[10.0.0.1]:2222'


def test_format_fingerprint(rsa_key):
    fingerprint = format_fingerprint(rsa_key)
    parts = fingerprint.split(':')
    assert len(parts) == 16
    assert all(len(p) == 2 for p in parts)


def test_missing_file(store, rsa_key):
    result = store.check('10.0.0.1', 22, rsa_key)
    assert result.state == trust_store.FILE_NOT_FOUND
    assert result.fingerprint == format_fingerprint(rsa_key)


def test_add_then_known(store, rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    assert store.check('10.0.0.1', 22, rsa_key).state == trust_store.KNOWN_OK


def test_unknown_host(store, rsa_key, other_rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    assert store.check('10.0.0.2', 22, other_rsa_key).state == trust_store.UNKNOWN


def test_port_is_part_of_identity(store, rsa_key):
    store.add('10.0.0.1', 2222, rsa_key)
    assert store.check('10.0.0.1', 2222, rsa_key).state == trust_store.KNOWN_OK
    assert store.check('10.0.0.1', 22, rsa_key).state == trust_store.UNKNOWN


def test_changed_key(store, rsa_key, other_rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    result = store.check('10.0.0.1', 22, other_rsa_key)
    assert result.state == trust_store.KNOWN_CHANGED
    assert result.fingerprint == format_fingerprint(other_rsa_key)


def test_other_key_type(store, rsa_key, ecdsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    assert store.check('10.0.0.1', 22, ecdsa_key).state == trust_store.FOUND_OTHER


def test_unreadable_store(tmp_path, rsa_key):
    # A directory where the file should be cannot be read
    path = tmp_path / 'known_hosts'
    path.mkdir()
    result = TrustStore(str(path)).check('10.0.0.1', 22, rsa_key)
    assert result.state == trust_store.ERROR
    assert result.error


@pytest.mark.parametrize('content', [
    b'10.0.0.10 ssh-rsa AAAA!!!notbase64\n',
    b'\xff\xfe garbage \xff\n',
])
def test_corrupt_store_is_an_error(tmp_path, rsa_key, content):
    path = tmp_path / 'known_hosts'
    path.write_bytes(content)

    result = TrustStore(str(path)).check('10.0.0.10', 22, rsa_key)
    assert result.state == trust_store.ERROR
    assert result.error


def test_add_same_key_twice_is_noop(store, rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    store.add('10.0.0.1', 22, rsa_key)
    assert len(store.records()) == 1


def test_add_conflicting_key(store, rsa_key, other_rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    with pytest.raises(HostKeyConflict):
        store.add('10.0.0.1', 22, other_rsa_key)
    assert store.check('10.0.0.1', 22, rsa_key).state == trust_store.KNOWN_OK


def test_add_creates_parent_directory(tmp_path, rsa_key):
    store = TrustStore(str(tmp_path / 'var' / 'lib' / 'known_hosts'))
    store.add('10.0.0.1', 22, rsa_key)
    assert store.check('10.0.0.1', 22, rsa_key).state == trust_store.KNOWN_OK


def test_remove(store, rsa_key, other_rsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    store.add('10.0.0.2', 22, other_rsa_key)

    assert store.remove('10.0.0.1') is True
    assert store.check('10.0.0.1', 22, rsa_key).state == trust_store.UNKNOWN
    assert store.check('10.0.0.2', 22, other_rsa_key).state == trust_store.KNOWN_OK
    assert store.remove('10.0.0.1') is False


def test_remove_without_file(store):
    assert store.remove('10.0.0.1') is False


def test_records(store, rsa_key, ecdsa_key):
    store.add('10.0.0.1', 22, rsa_key)
    store.add('10.0.0.2', 2222, ecdsa_key)
    records = store.records()
    assert ('10.0.0.1', 'ssh-rsa', format_fingerprint(rsa_key)) in records
    assert ('[10.0.0.2]:2222', ecdsa_key.get_name(), format_fingerprint(ecdsa_key)) in records


def test_concurrent_adds_keep_every_record(store, rsa_key):
    threads = [
        threading.Thread(target=store.add, args=(f'10.0.1.{i}', 22, rsa_key))
        for i in range(10)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    identities = {identity for identity, _, _ in store.records()}
    assert identities == {f'10.0.1.{i}' for i in range(10)}
