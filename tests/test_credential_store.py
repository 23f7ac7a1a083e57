import pytest

from crmsync.credential_store import EXPIRY_KEY, TOKEN_KEY, CredentialStore


def test_save_then_read_returns_token(kv, clock):
    store = CredentialStore(kv, clock)
    saved = store.save("abc", 3600)

    assert saved.expires_at_ms == clock.now_ms() + 3_600_000
    credential = store.read()
    assert credential is not None
    assert credential.access_token == "abc"
    assert credential.expires_at_ms == saved.expires_at_ms


@pytest.mark.parametrize("lifetime", [301, 600, 3599, 86_400])
def test_read_returns_non_expired_credentials(kv, clock, lifetime):
    store = CredentialStore(kv, clock)
    store.save("token", lifetime)

    assert store.read().access_token == "token"


@pytest.mark.parametrize("lifetime", [0, 1, 120, 299, 300])
def test_read_treats_tokens_inside_buffer_as_absent_and_clears(kv, clock, lifetime):
    store = CredentialStore(kv, clock)
    store.save("token", lifetime)

    assert store.read() is None
    assert kv.get(TOKEN_KEY) is None
    assert kv.get(EXPIRY_KEY) is None


def test_token_expires_as_clock_advances(kv, clock):
    store = CredentialStore(kv, clock)
    store.save("token", 900)

    clock.advance(599)
    assert store.read() is not None
    clock.advance(1)
    assert store.read() is None


def test_save_overwrites_previous_value(kv, clock):
    store = CredentialStore(kv, clock)
    store.save("first", 3600)
    store.save("second", 7200)

    credential = store.read()
    assert credential.access_token == "second"
    assert credential.expires_at_ms == clock.now_ms() + 7_200_000


def test_read_without_stored_token(kv, clock):
    assert CredentialStore(kv, clock).read() is None


def test_unparsable_expiry_is_cleared(kv, clock):
    kv.set(TOKEN_KEY, "abc")
    kv.set(EXPIRY_KEY, "tomorrow")

    assert CredentialStore(kv, clock).read() is None
    assert kv.get(TOKEN_KEY) is None


def test_clear_is_idempotent(kv, clock):
    store = CredentialStore(kv, clock)
    store.save("abc", 3600)

    store.clear()
    store.clear()

    assert store.read() is None
    assert kv.keys() == []
