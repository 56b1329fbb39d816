import hashlib
import hmac

import pytest
from hypothesis import assume, given, strategies as st

from signature import SignatureConfigError, compute_signature, verify_signature


def test_compute_signature_is_hmac_sha256_hex():
    expected = hmac.new(b"secret", b'{"a":1}', hashlib.sha256).hexdigest()
    assert compute_signature("secret", b'{"a":1}') == expected


@given(secret=st.text(min_size=1), body=st.binary())
def test_signature_accepted_in_any_case(secret, body):
    sig = compute_signature(secret, body)
    assert verify_signature(secret, body, sig)
    assert verify_signature(secret, body, sig.upper())
    assert verify_signature(secret, body, sig.swapcase())


@given(secret=st.text(min_size=1), body=st.binary(), other=st.binary())
def test_signature_of_other_body_rejected(secret, body, other):
    assume(other != body)
    assert not verify_signature(secret, body, compute_signature(secret, other))


def test_reserialized_body_does_not_verify():
    raw = b'{"type": "sleep",  "score": 0.85}'
    compact = b'{"type":"sleep","score":0.85}'
    assert not verify_signature("s", compact, compute_signature("s", raw))


def test_empty_signature_rejected():
    assert not verify_signature("s", b"{}", "")


def test_non_ascii_signature_rejected_without_error():
    assert not verify_signature("s", b"{}", "é" * 64)


def test_missing_secret_is_config_error():
    with pytest.raises(SignatureConfigError):
        verify_signature("", b"{}", "abc")
