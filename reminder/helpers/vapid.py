from base64 import urlsafe_b64encode

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat


def _b64url(value: bytes) -> str:
    """
    Base64 URL-safe encoding without padding, as VAPID keys are exchanged (RFC 8292).
    """
    return urlsafe_b64encode(value).rstrip(b"=").decode()


def generate_vapid_keys() -> tuple[str, str]:
    """
    Generate a VAPID key pair on the P-256 curve.

    Returns the raw private key and the uncompressed public key, both base64 URL-safe encoded. The public key is the `applicationServerKey` browsers expect, the private key can be loaded by pywebpush.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_raw = private_key.private_numbers().private_value.to_bytes(32, "big")
    public_raw = private_key.public_key().public_bytes(
        encoding=Encoding.X962,
        format=PublicFormat.UncompressedPoint,
    )
    return _b64url(private_raw), _b64url(public_raw)
