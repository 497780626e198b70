"""Credential broker for join material.

A run uses exactly one credential bundle: a bootstrap token, the key that
encrypts the uploaded control-plane certificates, and the CA public key hash.
The bundle is created when the primary is first initialized, cached on the
primary so later runs can reuse it while it is still valid, and regenerated
when it has expired.
"""
import logging
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from kubestrap.errors import CredentialError
from kubestrap.modules.models import ClusterFormationState, ClusterPhase, CredentialBundle, Node

logger = logging.getLogger("kubestrap.credentials")

TOKEN_RE = re.compile(r'^[a-z0-9]{6}\.[a-z0-9]{16}$')
CERT_KEY_RE = re.compile(r'^[0-9a-f]{64}$')
CA_HASH_RE = re.compile(r'^sha256:[0-9a-f]{64}$')

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Generate a kubeadm bootstrap token (``[a-z0-9]{6}.[a-z0-9]{16}``)."""
    token_id = ''.join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    token_secret = ''.join(secrets.choice(_TOKEN_ALPHABET) for _ in range(16))
    return f"{token_id}.{token_secret}"


def generate_certificate_key() -> str:
    """Generate a 32-byte AES key, hex encoded, for ``--certificate-key``."""
    return secrets.token_hex(32)


def validate_bundle(bundle: Optional[CredentialBundle], now: datetime) -> CredentialBundle:
    """Return ``bundle`` if it is usable for a join, else raise CredentialError."""
    if bundle is None:
        raise CredentialError("No credential bundle is available for joining")
    if not bundle.is_complete():
        raise CredentialError("Credential bundle is incomplete")
    if not TOKEN_RE.match(bundle.join_token):
        raise CredentialError("Join token is malformed")
    if not CERT_KEY_RE.match(bundle.cert_encryption_key):
        raise CredentialError("Certificate encryption key is malformed")
    if not CA_HASH_RE.match(bundle.ca_cert_hash):
        raise CredentialError("CA certificate hash is malformed")
    if bundle.is_expired(now):
        raise CredentialError(f"Credential bundle expired at {bundle.expires_at.isoformat()}")
    return bundle


class CredentialBroker:
    """Produces the run's credential bundle and hands it out to joins."""

    def __init__(self, driver, credential_config, clock: Callable[[], datetime] = utcnow):
        self.driver = driver
        self.config = credential_config
        self.clock = clock
        self._pending: Optional[CredentialBundle] = None

    @property
    def validity(self) -> timedelta:
        """A bundle is usable while both the token and the uploaded certs live."""
        return timedelta(seconds=min(self.config.token_ttl, self.config.certificate_key_ttl))

    def _new_bundle(self, ca_cert_hash: str = "") -> CredentialBundle:
        now = self.clock()
        return CredentialBundle(
            join_token=generate_token(),
            cert_encryption_key=generate_certificate_key(),
            ca_cert_hash=ca_cert_hash,
            created_at=now,
            expires_at=now + self.validity,
        )

    def prepare_initial(self) -> CredentialBundle:
        """Generate the token and certificate key handed to ``kubeadm init``.

        The CA hash only exists after init and is filled in by :meth:`acquire`.
        """
        self._pending = self._new_bundle()
        return self._pending

    def acquire(self, primary: Node, state: ClusterFormationState) -> CredentialBundle:
        """Return the bundle for this run and bind it to ``state``.

        Order of preference:
        1. a bundle already bound to the state (never regenerated mid-run)
        2. the bundle prepared for a fresh ``kubeadm init`` in this run
        3. a valid, unexpired bundle cached on the primary, reused verbatim
        4. a newly generated bundle (cache missing, malformed or expired)
        """
        if state.credentials is not None:
            return state.credentials
        if not state.phase.at_least(ClusterPhase.PRIMARY_READY):
            raise CredentialError("Join credentials are only available once the primary is ready")

        fresh = True
        if self._pending is not None:
            bundle = self._pending
            bundle.ca_cert_hash = self.driver.ca_cert_hash(primary)
            self._pending = None
            logger.info(f"🔑 [{primary.id}] Captured join credentials from initialization")
        else:
            bundle = self._reuse_cached(primary)
            if bundle is None:
                bundle = self._regenerate(primary)
            else:
                fresh = False

        validate_bundle(bundle, self.clock())
        if fresh:
            self.driver.write_cached_bundle(primary, bundle)
        state.bind_credentials(bundle)
        return bundle

    def _reuse_cached(self, primary: Node) -> Optional[CredentialBundle]:
        record = self.driver.read_cached_bundle(primary)
        if record is None:
            logger.info(f"[{primary.id}] No cached join credentials found")
            return None
        try:
            bundle = validate_bundle(CredentialBundle.from_dict(record), self.clock())
        except (CredentialError, TypeError) as e:
            # Recoverable: a fresh bundle is generated from the live cluster
            logger.warning(f"⚠️  [{primary.id}] Cached join credentials unusable ({e}), regenerating")
            return None
        logger.info(
            f"♻️  [{primary.id}] Reusing cached join credentials "
            f"(valid until {bundle.expires_at.isoformat()})"
        )
        return bundle

    def _regenerate(self, primary: Node) -> CredentialBundle:
        bundle = self._new_bundle()
        self.driver.create_token(primary, bundle.join_token, self.config.token_ttl)
        self.driver.upload_certs(primary, bundle.cert_encryption_key)
        bundle.ca_cert_hash = self.driver.ca_cert_hash(primary)
        logger.info(f"🔑 [{primary.id}] Generated new join credentials")
        return bundle

    def require(self, state: ClusterFormationState) -> CredentialBundle:
        """Return the bound bundle, failing closed if it cannot be used."""
        return validate_bundle(state.credentials, self.clock())
