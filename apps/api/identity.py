"""
Bearer token verification against the identity provider.

Firebase ID tokens are RS256 JWTs signed with rotating keys whose x509
certificates are published at a well known URL. The certificates are cached
for as long as the endpoint's Cache-Control header allows.
"""
import logging
import re
import threading
import time
from typing import Dict, Optional

import requests
from jose import jwt
from jose.exceptions import JOSEError

from config import FIREBASE_CERTS_URL
from schemas import Principal

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
ISSUER_PREFIX = "https://securetoken.google.com/"
DEFAULT_CERT_TTL = 3600  # seconds, used when the endpoint sends no max-age

_MAX_AGE = re.compile(r"max-age=(\d+)")


class AuthError(Exception):
    """Base class for rejected credentials"""
    status_code = 401
    default_message = "Unauthorized"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(AuthError):
    default_message = "No token provided"


class InvalidCredential(AuthError):
    default_message = "Invalid token"


class ServiceUnavailable(AuthError):
    status_code = 503
    default_message = "Authentication service unavailable"


def _cache_ttl(cache_control: str) -> int:
    match = _MAX_AGE.search(cache_control or "")
    return int(match.group(1)) if match else DEFAULT_CERT_TTL


class IdentityVerifier:
    """Verifies identity provider tokens and extracts the Principal.

    Constructed once at startup and shared across requests. Without a project
    id the verifier stays in an unavailable state and every call raises
    ServiceUnavailable instead of accepting tokens it cannot check.
    """

    def __init__(
        self,
        project_id: Optional[str],
        certs_url: str = FIREBASE_CERTS_URL,
        http=None,
        leeway: int = 0,
    ):
        self.project_id = project_id
        self.issuer = f"{ISSUER_PREFIX}{project_id}" if project_id else None
        self.certs_url = certs_url
        self.http = http or requests.Session()
        self.leeway = leeway
        self._certs: Dict[str, str] = {}
        self._certs_expire_at = 0.0
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return bool(self.project_id)

    def verify_header(self, authorization: Optional[str]) -> Principal:
        """Verify an `Authorization: Bearer <token>` header value"""
        if not authorization or not authorization.startswith("Bearer "):
            raise Unauthenticated()
        token = authorization[len("Bearer "):].strip()
        if not token:
            raise Unauthenticated()
        return self.verify(token)

    def verify(self, token: str) -> Principal:
        """Verify a raw token and return the Principal it identifies"""
        if not self.ready:
            raise ServiceUnavailable()

        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as e:
            logger.warning("Malformed token: %s", e)
            raise InvalidCredential() from e

        if header.get("alg") != ALGORITHM:
            logger.warning("Rejected token signed with %s", header.get("alg"))
            raise InvalidCredential()

        certificate = self._certificates().get(header.get("kid") or "")
        if certificate is None:
            logger.warning("Token signed with unknown key id %s", header.get("kid"))
            raise InvalidCredential()

        try:
            claims = jwt.decode(
                token,
                certificate,
                algorithms=[ALGORITHM],
                audience=self.project_id,
                issuer=self.issuer,
                options={"leeway": self.leeway},
            )
        except JOSEError as e:
            logger.warning("Token verification failed: %s", e)
            raise InvalidCredential() from e

        uid = claims.get("sub")
        if not isinstance(uid, str) or not uid or len(uid) > 128:
            raise InvalidCredential()
        now = time.time() + self.leeway
        for claim in ("iat", "auth_time"):
            issued = claims.get(claim)
            if issued is not None and issued > now:
                logger.warning("Token %s is in the future", claim)
                raise InvalidCredential()

        return Principal(
            id=uid,
            email=claims.get("email"),
            display_name=claims.get("name"),
            avatar_url=claims.get("picture"),
            email_verified=bool(claims.get("email_verified", False)),
        )

    def _certificates(self) -> Dict[str, str]:
        with self._lock:
            if self._certs and time.time() < self._certs_expire_at:
                return self._certs
            try:
                response = self.http.get(self.certs_url, timeout=10)
                response.raise_for_status()
                certs = response.json()
            except (requests.RequestException, ValueError) as e:
                logger.error("Could not fetch signing certificates: %s", e)
                raise ServiceUnavailable() from e
            if not isinstance(certs, dict):
                logger.error("Signing certificate endpoint returned %s, expected an object", type(certs).__name__)
                raise ServiceUnavailable()

            self._certs = certs
            self._certs_expire_at = time.time() + _cache_ttl(response.headers.get("Cache-Control", ""))
            return self._certs
