from nacl.encoding import Base64Encoder, RawEncoder
from nacl.exceptions import CryptoError
from nacl.hash import blake2b
from nacl.secret import SecretBox

from .models import Sealed

_SEAL_PERSON = b"meetd-seal-v1"


class SealError(Exception):
    pass


class Sealer:
    """Seals secrets at rest (private keys, refresh tokens) with XSalsa20-Poly1305.

    The box key is derived from the server secret, so rotating the secret
    makes every sealed value unreadable.
    """

    def __init__(self, server_secret: str):
        if not server_secret:
            raise ValueError("server secret must not be empty")
        key = blake2b(
            server_secret.encode("utf-8"),
            digest_size=SecretBox.KEY_SIZE,
            person=_SEAL_PERSON,
            encoder=RawEncoder,
        )
        self._box = SecretBox(key)

    def seal(self, plaintext: bytes) -> Sealed:
        ciphertext = self._box.encrypt(plaintext, encoder=Base64Encoder)
        return Sealed(ciphertext=ciphertext.decode("ascii"))

    def unseal(self, sealed: Sealed) -> bytes:
        try:
            return self._box.decrypt(sealed.ciphertext.encode("ascii"), encoder=Base64Encoder)
        except (CryptoError, ValueError) as e:
            raise SealError("sealed value could not be opened") from e
