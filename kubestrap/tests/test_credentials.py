from datetime import timedelta

import pytest

from kubestrap.errors import CredentialError
from kubestrap.modules.credentials import (
    CA_HASH_RE,
    CERT_KEY_RE,
    TOKEN_RE,
    CredentialBroker,
    generate_certificate_key,
    generate_token,
    validate_bundle,
)
from kubestrap.modules.models import ClusterFormationState, ClusterPhase, CredentialBundle
from kubestrap.tests.fakes import CA_HASH, FixedClock


def ready_state():
    state = ClusterFormationState(api_endpoint="10.0.0.100:6443")
    state.advance(ClusterPhase.PRIMARY_READY)
    return state


@pytest.fixture
def broker(driver, config, clock):
    return CredentialBroker(driver, config.credentials, clock=clock)


def test_generated_values_match_kubeadm_formats():
    assert TOKEN_RE.match(generate_token())
    assert CERT_KEY_RE.match(generate_certificate_key())
    assert generate_token() != generate_token()


def test_initial_bundle_is_captured_after_init(broker, driver, topology):
    pending = broker.prepare_initial()
    assert pending.ca_cert_hash == ""

    state = ready_state()
    bundle = broker.acquire(topology.primary, state)

    assert bundle is pending
    assert CA_HASH_RE.match(bundle.ca_cert_hash)
    assert state.credentials is bundle
    assert driver.cache['join_token'] == bundle.join_token
    assert ('create_token', 'ctrl-1') not in driver.calls


def test_bundle_is_not_regenerated_within_a_run(broker, driver, topology):
    state = ready_state()
    first = broker.acquire(topology.primary, state)
    driver.events.clear()

    assert broker.acquire(topology.primary, state) is first
    assert driver.calls == []


def test_valid_cache_is_reused_verbatim_across_runs(driver, config, clock, topology):
    first_run = CredentialBroker(driver, config.credentials, clock=clock)
    first_run.prepare_initial()
    first = first_run.acquire(topology.primary, ready_state())
    driver.events.clear()

    within_window = FixedClock(clock.now + timedelta(minutes=30))
    second = CredentialBroker(driver, config.credentials, clock=within_window).acquire(
        topology.primary, ready_state()
    )

    assert second.to_dict() == first.to_dict()
    assert driver.mutating_calls == []


def test_expired_cache_is_regenerated_with_new_token(driver, config, clock, topology):
    first_run = CredentialBroker(driver, config.credentials, clock=clock)
    first_run.prepare_initial()
    first = first_run.acquire(topology.primary, ready_state())

    expired = FixedClock(clock.now + timedelta(hours=2, seconds=1))
    second = CredentialBroker(driver, config.credentials, clock=expired).acquire(
        topology.primary, ready_state()
    )

    assert second.join_token != first.join_token
    assert second.created_at == expired.now
    assert ('create_token', 'ctrl-1') in driver.calls
    assert ('upload_certs', 'ctrl-1') in driver.calls
    assert driver.cache['join_token'] == second.join_token


@pytest.mark.parametrize("cache", [{}, {"join_token": "abc"}, {"join_token": 1, "created_at": None}])
def test_malformed_cache_is_regenerated(driver, broker, topology, cache):
    driver.cache = cache

    bundle = broker.acquire(topology.primary, ready_state())

    assert TOKEN_RE.match(bundle.join_token)
    assert ('create_token', 'ctrl-1') in driver.calls


def test_validity_is_bounded_by_certificate_key_ttl(broker):
    assert broker.validity == timedelta(hours=2)


def test_binding_before_primary_ready_fails(broker, topology):
    state = ClusterFormationState(api_endpoint="10.0.0.100:6443")

    with pytest.raises(CredentialError):
        broker.acquire(topology.primary, state)
    assert state.credentials is None


def test_require_fails_closed(broker, clock):
    state = ready_state()
    with pytest.raises(CredentialError):
        broker.require(state)

    incomplete = CredentialBundle("abcdef.0123456789abcdef", "", CA_HASH, clock.now, clock.now + timedelta(hours=1))
    with pytest.raises(CredentialError):
        validate_bundle(incomplete, clock.now)


def test_require_rejects_expired_bundle(driver, config, clock, topology):
    broker = CredentialBroker(driver, config.credentials, clock=clock)
    state = ready_state()
    broker.acquire(topology.primary, state)

    broker.clock = FixedClock(clock.now + timedelta(hours=3))

    with pytest.raises(CredentialError, match="expired"):
        broker.require(state)


def test_bundle_repr_is_redacted(broker, topology):
    bundle = broker.acquire(topology.primary, ready_state())

    assert bundle.join_token not in repr(bundle)
    assert bundle.cert_encryption_key not in str(bundle)
    assert bundle.join_token not in repr(ready_state())
