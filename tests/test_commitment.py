"""Tests for the HMAC commitment engine.

Covers:
- determinism of the keyed hash and independent recomputation
- reveal consistency with the digest shown at commit time
- lock/reveal ordering and single use of a commitment
- failure of the entropy source
- the handle never exposing its key through repr
"""

import hashlib
import hmac

import pytest

from nontransitive_dice import (
    KEY_BYTES,
    Commitment,
    CommitmentEngine,
    CommitmentState,
    ErrorKind,
    ProtocolViolation,
    RandomSourceUnavailable,
    SecureRandomSource,
    encode_secret,
    keyed_hash,
    verify_commitment,
)


class TestKeyedHash:
    """Test encode_secret / keyed_hash / verify_commitment."""

    def test_encoding_is_decimal_ascii(self):
        assert encode_secret(0) == b"0"
        assert encode_secret(1) == b"1"
        assert encode_secret(42) == b"42"

    def test_negative_secret_rejected(self):
        with pytest.raises(ValueError):
            encode_secret(-1)

    def test_deterministic(self):
        key = bytes(range(32))
        for secret in (0, 1):
            assert keyed_hash(key, secret) == keyed_hash(key, secret)

    def test_matches_independent_hmac(self):
        """A verifier using only hmac/hashlib gets the same digest."""
        key = b"\x5a" * 32
        expected = hmac.new(key, b"1", hashlib.sha3_256).digest()
        assert keyed_hash(key, 1) == expected

    def test_digest_is_256_bits(self):
        assert len(keyed_hash(b"k" * 32, 0)) == 32

    def test_secrets_produce_different_digests(self):
        key = b"\x01" * 32
        assert keyed_hash(key, 0) != keyed_hash(key, 1)

    def test_verify_rejects_wrong_secret_or_key(self):
        key = b"\x02" * 32
        digest = keyed_hash(key, 0)
        assert verify_commitment(digest, key, 0)
        assert not verify_commitment(digest, key, 1)
        assert not verify_commitment(digest, b"\x03" * 32, 0)


class TestCommitmentEngine:
    """Test commit / lock / reveal."""

    def test_reveal_matches_digest(self):
        engine = CommitmentEngine(SecureRandomSource())
        for _ in range(20):
            digest, handle = engine.commit()
            handle.lock()
            secret, key = engine.reveal(handle)
            assert secret in (0, 1)
            assert len(key) == KEY_BYTES
            assert digest == keyed_hash(key, secret)
            assert verify_commitment(digest, key, secret)

    def test_reveal_returns_committed_values(self, scripted_source):
        """The secret is drawn first, then the key, from the shared source."""
        key = bytes(range(32))
        source, script = scripted_source(b"\x01" + key)
        engine = CommitmentEngine(source)
        digest, handle = engine.commit()
        assert script.remaining == 0
        assert handle.value == 1
        handle.lock()
        assert engine.reveal(handle) == (1, key)
        assert digest == keyed_hash(key, 1)

    def test_commit_secret_is_masked_to_one_bit(self, scripted_source):
        source, _ = scripted_source(b"\xfe" + b"\x00" * 32)
        _, handle = CommitmentEngine(source).commit()
        assert handle.value == 0

    def test_reveal_before_lock_refused(self):
        engine = CommitmentEngine(SecureRandomSource())
        _, handle = engine.commit()
        with pytest.raises(ProtocolViolation) as exc_info:
            engine.reveal(handle)
        assert exc_info.value.kind is ErrorKind.PROTOCOL_VIOLATION
        assert handle.state is CommitmentState.SEALED

    def test_commitment_is_single_use(self):
        engine = CommitmentEngine(SecureRandomSource())
        _, handle = engine.commit()
        handle.lock()
        engine.reveal(handle)
        assert handle.state is CommitmentState.REVEALED
        with pytest.raises(ProtocolViolation):
            engine.reveal(handle)
        with pytest.raises(ProtocolViolation):
            handle.lock()

    def test_double_lock_refused(self):
        _, handle = CommitmentEngine(SecureRandomSource()).commit()
        handle.lock()
        with pytest.raises(ProtocolViolation):
            handle.lock()

    def test_repr_hides_key_and_secret(self):
        key = b"\xab" * 32
        handle = Commitment(1, key, keyed_hash(key, 1))
        text = repr(handle)
        assert key.hex().upper() not in text
        assert key.hex() not in text
        assert "sealed" in text

    def test_larger_domain(self):
        engine = CommitmentEngine(SecureRandomSource(), domain_size=10)
        digest, handle = engine.commit()
        handle.lock()
        secret, key = engine.reveal(handle)
        assert 0 <= secret < 10
        assert verify_commitment(digest, key, secret)

    def test_domain_must_have_two_values(self):
        with pytest.raises(ValueError):
            CommitmentEngine(SecureRandomSource(), domain_size=1)


class TestRandomSourceFailure:
    """Test that entropy failures abort instead of degrading."""

    def test_os_error_is_fatal(self):
        def broken(_size):
            raise OSError("no entropy")

        engine = CommitmentEngine(SecureRandomSource(reader=broken))
        with pytest.raises(RandomSourceUnavailable) as exc_info:
            engine.commit()
        assert exc_info.value.kind is ErrorKind.RANDOM_SOURCE_UNAVAILABLE

    def test_short_read_is_fatal(self):
        source = SecureRandomSource(reader=lambda size: b"\x00" * (size - 1))
        with pytest.raises(RandomSourceUnavailable):
            source.read(32)

    def test_key_read_failure_after_secret(self):
        """Failing after the secret is drawn still raises, never returns a partial commit."""
        calls = []

        def reader_then_fail(size):
            calls.append(size)
            if len(calls) > 1:
                raise NotImplementedError("getrandom unsupported")
            return b"\x00" * size

        engine = CommitmentEngine(SecureRandomSource(reader=reader_then_fail))
        with pytest.raises(RandomSourceUnavailable):
            engine.commit()
