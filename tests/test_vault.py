import base64

import pytest

from socialpub.errors import ConfigError, DecryptionError
from socialpub.vault import NONCE_SIZE, TokenVault


def test_round_trip(vault):
    blob = vault.encrypt('EAAG-page-token')
    assert blob != 'EAAG-page-token'
    assert vault.decrypt(blob) == 'EAAG-page-token'


def test_fresh_nonce_per_call(vault):
    first = vault.encrypt('same-token')
    second = vault.encrypt('same-token')
    assert first != second
    nonces = {base64.b64decode(b)[:NONCE_SIZE] for b in (first, second)}
    assert len(nonces) == 2


def test_none_passes_through(vault):
    assert vault.encrypt(None) is None
    assert vault.decrypt(None) is None


def test_wrong_key_is_rejected(vault):
    blob = vault.encrypt('secret')
    other = TokenVault(b'\x01' * 32)
    with pytest.raises(DecryptionError):
        other.decrypt(blob)


def test_tampered_blob_is_rejected(vault):
    raw = bytearray(base64.b64decode(vault.encrypt('secret')))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        vault.decrypt(base64.b64encode(bytes(raw)).decode('ascii'))


@pytest.mark.parametrize('blob', ['not base64!!', base64.b64encode(b'short').decode('ascii')])
def test_malformed_blob_is_rejected(vault, blob):
    with pytest.raises(DecryptionError):
        vault.decrypt(blob)


def test_key_must_be_32_bytes():
    with pytest.raises(ConfigError):
        TokenVault(b'too-short')


def test_repr_hides_key(vault):
    assert repr(vault) == '<TokenVault>'
