"""
Encryption stage for backup archives.

Archives are encrypted to the age format (https://age-encryption.org/v1)
with the ``age`` package:

- ``age1...`` public keys (AgePublicKey)
- a single passphrase (PasswordKey, scrypt recipient)

AgeEncryptor streams the payload, so an archive can be encrypted while it
is produced and uploaded.
"""

import io
import os
from typing import BinaryIO, Callable, Sequence, Tuple

from age.exceptions import AuthenticationFailed, NoIdentity, ParserError
from age.file import PAYLOAD_HKDF_LABEL, Decryptor, Encryptor
from age.keys.agekey import AgePrivateKey, AgePublicKey
from age.keys.password import PasswordKey
from age.stream import PLAINTEXT_BLOCK_SIZE, _pack_nonce
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305


NONCE_SIZE = 16


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


def parse_recipient(value: str) -> AgePublicKey:
    """
    Parse an ``age1...`` public key.

    Raises:
        EncryptionError: If the string is not a valid age recipient
    """
    try:
        return AgePublicKey.from_public_string(value.strip())
    except ValueError as e:
        raise EncryptionError(f"invalid age recipient: {e}") from e


def parse_identity(value: str) -> AgePrivateKey:
    """Parse an ``AGE-SECRET-KEY-1...`` private key."""
    try:
        return AgePrivateKey.from_private_string(value.strip())
    except ValueError as e:
        raise EncryptionError(f"invalid age identity: {e}") from e


def passphrase_recipient(passphrase: str) -> PasswordKey:
    if not passphrase:
        raise EncryptionError("passphrase must not be empty")
    return PasswordKey(passphrase.encode('utf-8'))


class AgeEncryptor(Encryptor):
    """
    age writer that seals each payload chunk as soon as it is complete.

    ``Encryptor`` keeps the whole plaintext until close, here only the
    current chunk is buffered. The header is written on construction;
    ``close()`` seals the final chunk but leaves ``stream`` open.
    """

    def __init__(self, keys: Sequence, stream: BinaryIO):
        self._buffer = bytearray()
        self._counter = 0
        self._aead = None

        super().__init__(keys, stream)

        nonce = os.urandom(NONCE_SIZE)
        aead = ChaCha20Poly1305(self._hkdf(PAYLOAD_HKDF_LABEL, nonce))
        stream.write(b'\n' + nonce)
        self._aead = aead

    def write(self, data) -> int:
        if self.closed:
            raise ValueError("write to closed file")

        self._buffer += data

        # a full chunk is held back until more data arrives, it may be the last one
        while len(self._buffer) > PLAINTEXT_BLOCK_SIZE:
            self._seal(bytes(self._buffer[:PLAINTEXT_BLOCK_SIZE]), last=False)
            del self._buffer[:PLAINTEXT_BLOCK_SIZE]

        return len(data)

    def _seal(self, chunk: bytes, last: bool):
        nonce = _pack_nonce(self._counter, last_block=last)
        self._stream.write(self._aead.encrypt(nonce, chunk, None))
        self._counter += 1

    def close(self):
        if self.closed:
            return
        try:
            # no payload nonce means the header never made it out
            if self._aead is not None:
                self._seal(bytes(self._buffer), last=True)
                self._buffer.clear()
                self._stream.flush()
        finally:
            io.RawIOBase.close(self)


def encrypt_writer(fileobj: BinaryIO, recipients: Sequence) -> Tuple[BinaryIO, Callable[[], None]]:
    """
    Wrap a stream with the encryption stage.

    Args:
        fileobj: Destination stream (the storage sink)
        recipients: AgePublicKey list or a single PasswordKey, may be empty

    Returns:
        Tuple of (stream to write plaintext to, close function). Without
        recipients the stream is ``fileobj`` itself and close does nothing.

    Raises:
        EncryptionError: If the header can't be created or written
    """
    if not recipients:
        return fileobj, lambda: None

    if len(recipients) > 1 and any(isinstance(r, PasswordKey) for r in recipients):
        raise EncryptionError("a passphrase recipient can't be combined with other recipients")

    try:
        writer = AgeEncryptor(recipients, fileobj)
    except OSError as e:
        raise EncryptionError(f"Failed to write age header: {e}") from e

    return writer, writer.close


def decrypt(data: bytes, identities: Sequence) -> bytes:
    """
    Decrypt an age file held in memory.

    Args:
        data: Complete age file
        identities: AgePrivateKey / PasswordKey list to try

    Returns:
        Plaintext bytes

    Raises:
        EncryptionError: If no identity matches or the file is corrupt
    """
    try:
        return Decryptor(identities, io.BytesIO(data)).read()
    except NoIdentity:
        raise EncryptionError("no identity matched any of the recipients")
    except ParserError as e:
        raise EncryptionError(f"not an age file: {e}") from e
    except (AuthenticationFailed, InvalidSignature):
        raise EncryptionError("age header MAC mismatch")
    except InvalidTag:
        raise EncryptionError("age payload authentication failed")
