from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import id_token

from ywinby.errors import AuthError


GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class GoogleIdentityVerifier:
    """Exchanges a Google Sign-In ID token for the verified email inside it."""

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self._request = GoogleAuthRequest()

    def verify_bearer(self, token: str) -> str:

        if not token:

            raise AuthError("missing bearer token")

        try:

            # signature, expiry and audience are checked here
            claims = id_token.verify_oauth2_token(token, self._request, self.client_id)

        except Exception as exc:  # noqa: BLE001

            raise AuthError(f"cannot decode ID token: {exc}") from exc

        if claims.get("iss") not in GOOGLE_ISSUERS:

            raise AuthError("wrong issuer")

        email = claims.get("email") or ""

        if not email:

            raise AuthError("cannot read email from token")

        if not claims.get("email_verified"):

            raise AuthError("email is not verified")

        return email
