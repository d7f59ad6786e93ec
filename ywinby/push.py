import base64
import json
import os
import random
import struct
import time
from abc import ABC, abstractmethod
from urllib.parse import urlparse

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ywinby.errors import DeliveryError
from ywinby.models import PushMessage, Subscription


PUSH_SUBJECT_CLAIM = "https://github.com/mmta/ywinby"

PUSH_TTL_SECONDS = 1000

VAPID_EXPIRY_SECONDS = 12 * 3600

RECORD_SIZE = 4096

REQUEST_TIMEOUT_SECONDS = 30

HTTP_RETRY_DELAYS_SECONDS = (1, 3, 8)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    value = value.strip()
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _public_bytes(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


def load_vapid_private_key(private_key_b64: str) -> ec.EllipticCurvePrivateKey:
    raw = b64url_decode(private_key_b64)
    if len(raw) != 32:
        raise ValueError("VAPID private key must be a raw 32-byte P-256 scalar")
    return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256R1())


def generate_vapid_keys() -> tuple[str, str]:
    """Return a fresh (private, public) VAPID key pair, base64url encoded."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    raw_private = private_key.private_numbers().private_value.to_bytes(32, "big")
    return b64url_encode(raw_private), b64url_encode(_public_bytes(private_key.public_key()))


def _hkdf(salt: bytes, info: bytes, length: int, ikm: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)


def encrypt_payload(
    plaintext: bytes,
    p256dh: str,
    auth: str,
    *,
    sender_key: ec.EllipticCurvePrivateKey | None = None,
    salt: bytes | None = None,
) -> bytes:
    """Encrypt a push payload with the aes128gcm content coding (RFC 8291).

    The result is the complete request body: salt, record size, the sender's
    public key and a single ciphertext record.
    """
    ua_public_bytes = b64url_decode(p256dh)
    auth_secret = b64url_decode(auth)
    ua_public = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), ua_public_bytes)

    sender_key = sender_key or ec.generate_private_key(ec.SECP256R1())
    sender_public_bytes = _public_bytes(sender_key.public_key())
    salt = salt or os.urandom(16)

    shared_secret = sender_key.exchange(ec.ECDH(), ua_public)
    ikm = _hkdf(
        auth_secret,
        b"WebPush: info\x00" + ua_public_bytes + sender_public_bytes,
        32,
        shared_secret,
    )
    cek = _hkdf(salt, b"Content-Encoding: aes128gcm\x00", 16, ikm)
    nonce = _hkdf(salt, b"Content-Encoding: nonce\x00", 12, ikm)

    # 0x02 marks the last (and only) record
    ciphertext = AESGCM(cek).encrypt(nonce, plaintext + b"\x02", None)

    header = salt + struct.pack("!IB", RECORD_SIZE, len(sender_public_bytes)) + sender_public_bytes
    return header + ciphertext


def build_vapid_header(
    endpoint: str,
    private_key: ec.EllipticCurvePrivateKey,
    subject: str,
    now: int | None = None,
) -> str:
    parsed = urlparse(endpoint)
    audience = f"{parsed.scheme}://{parsed.netloc}"
    issued = int(time.time()) if now is None else now

    header = b64url_encode(json.dumps({"typ": "JWT", "alg": "ES256"}, separators=(",", ":")).encode())
    claims = b64url_encode(
        json.dumps(
            {"aud": audience, "exp": issued + VAPID_EXPIRY_SECONDS, "sub": subject},
            separators=(",", ":"),
        ).encode()
    )
    signing_input = f"{header}.{claims}".encode("ascii")
    der_signature = private_key.sign(signing_input, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der_signature)
    signature = b64url_encode(r.to_bytes(32, "big") + s.to_bytes(32, "big"))

    token = f"{header}.{claims}.{signature}"
    public_key = b64url_encode(_public_bytes(private_key.public_key()))
    return f"vapid t={token}, k={public_key}"


def _is_retryable_http_status(status_code: int) -> bool:

    return status_code in (408, 425, 429, 500, 502, 503, 504)


def _post_with_retries(
    url: str,
    *,
    headers: dict[str, str],
    body: bytes,
    timeout: int = REQUEST_TIMEOUT_SECONDS,
) -> requests.Response:

    for attempt in range(len(HTTP_RETRY_DELAYS_SECONDS) + 1):

        try:

            response = requests.post(url, headers=headers, data=body, timeout=timeout)

        except requests.RequestException as exc:

            if attempt < len(HTTP_RETRY_DELAYS_SECONDS):

                base_delay = HTTP_RETRY_DELAYS_SECONDS[attempt]
                delay = base_delay + random.uniform(0, base_delay * 0.25)

                print(
                    f"Push request failed ({exc}); retrying in {delay:.1f}s "
                    f"[{attempt + 1}/{len(HTTP_RETRY_DELAYS_SECONDS) + 1}]"
                )

                time.sleep(delay)

                continue

            raise

        if (
            _is_retryable_http_status(response.status_code)
            and attempt < len(HTTP_RETRY_DELAYS_SECONDS)
        ):

            base_delay = HTTP_RETRY_DELAYS_SECONDS[attempt]
            delay = base_delay + random.uniform(0, base_delay * 0.25)

            print(
                f"Push HTTP {response.status_code} retry in {delay:.1f}s "
                f"[{attempt + 1}/{len(HTTP_RETRY_DELAYS_SECONDS) + 1}]"
            )

            time.sleep(delay)

            continue

        return response

    raise RuntimeError("Unreachable retry state")


class Dispatcher(ABC):
    """Delivers one push message to one subscription.

    `deliver` returns on success and raises DeliveryError otherwise.
    """

    @abstractmethod
    def deliver(self, subscription: Subscription, message: PushMessage) -> None: ...


class WebPushDispatcher(Dispatcher):

    def __init__(self, private_key_b64: str, subject: str = PUSH_SUBJECT_CLAIM) -> None:
        self.private_key = load_vapid_private_key(private_key_b64)
        self.subject = subject

    def deliver(self, subscription: Subscription, message: PushMessage) -> None:
        if not subscription.is_usable():
            raise DeliveryError("recipient has no usable push subscription")

        try:
            body = encrypt_payload(
                json.dumps(message.to_dict()).encode("utf-8"),
                subscription.keys.p256dh,
                subscription.keys.auth,
            )
            authorization = build_vapid_header(subscription.endpoint, self.private_key, self.subject)
        except ValueError as exc:
            raise DeliveryError(f"cannot prepare push message: {exc}") from exc

        headers = {
            "Authorization": authorization,
            "Content-Encoding": "aes128gcm",
            "Content-Type": "application/octet-stream",
            "TTL": str(PUSH_TTL_SECONDS),
        }
        try:
            response = _post_with_retries(subscription.endpoint, headers=headers, body=body)
        except requests.RequestException as exc:
            raise DeliveryError(f"push request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryError(
                f"push service returned {response.status_code}: {response.text or ''}"
            )
