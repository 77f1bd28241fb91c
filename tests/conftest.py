"""
Shared fixtures: a throwaway SQLite database, a signing key whose x509
certificate is served by a fake certificate endpoint, a fake upstream try-on
API and a fake Cloudinary.
"""
import datetime as dt
import io
import json
import random
import sys
import threading
import time
from pathlib import Path

import cloudinary
import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from jose import jwt
from PIL import Image
from requests.structures import CaseInsensitiveDict
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "apps" / "api"))

from auth import get_verifier  # noqa: E402
from database import create_tables, get_db  # noqa: E402
from identity import IdentityVerifier  # noqa: E402
from main import app, get_gateway, get_storage  # noqa: E402
from storage import PhotoStorage  # noqa: E402
from tryon import TryOnGateway  # noqa: E402

PROJECT_ID = "tryon-test"
KEY_ID = "test-key"
CERTS_URL = "https://certs.test/securetoken"
UPSTREAM_URL = "https://upstream.test/v1/idm-vton"
JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-payload\xff\xd9"


def make_response(status_code=200, content=b"", headers=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = content
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = "https://fake.test/"
    return response


def json_response(body, status_code=200, headers=None):
    merged = {"Content-Type": "application/json"}
    merged.update(headers or {})
    return make_response(status_code, json.dumps(body).encode(), merged)


def png_bytes(size=(4, 4), color=(200, 30, 30)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


class FakeHttp:
    """requests.Session stand-in.

    `reply` is a Response, an exception to raise, or a callable taking
    (method, url, kwargs) and returning one of those.
    """

    def __init__(self, reply=None):
        self.reply = reply
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        reply = self.reply(method, url, kwargs) if callable(self.reply) else self.reply
        if isinstance(reply, Exception):
            raise reply
        return reply

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


class FakeUploader:
    def __init__(self):
        self.uploads = []
        self.destroyed = []
        self.missing = set()

    def upload(self, file, **options):
        self.uploads.append((file.read(), options))
        public_id = options["public_id"]
        return {
            "public_id": public_id,
            "format": options["format"],
            "secure_url": f"https://res.cloudinary.com/demo/image/upload/{public_id}.{options['format']}",
        }

    def destroy(self, public_id, **options):
        self.destroyed.append(public_id)
        return {"result": "not found" if public_id in self.missing else "ok"}


class FakeApi:
    """cloudinary.api stand-in serving resources in fixed-size pages"""

    def __init__(self, resources=None, page_size=2):
        self.items = resources or []
        self.page_size = page_size
        self.calls = []

    def resources_for(self, prefix):
        return [r for r in self.items if r["public_id"].startswith(prefix)]

    def resources(self, **params):
        self.calls.append(params)
        matching = self.resources_for(params["prefix"])
        start = int(params.get("next_cursor") or 0)
        page = {"resources": matching[start:start + self.page_size]}
        if start + self.page_size < len(matching):
            page["next_cursor"] = str(start + self.page_size)
        return page


@pytest.fixture(scope="session", autouse=True)
def cloudinary_account():
    cloudinary.config(cloud_name="demo", api_key="key", api_secret="secret", secure=True)


def _signing_material():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "securetoken.test")])
    now = dt.datetime.now(dt.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return private_pem, cert.public_bytes(serialization.Encoding.PEM).decode()


@pytest.fixture(scope="session")
def signing_key():
    """(private key PEM, certificate PEM) published under KEY_ID"""
    return _signing_material()


@pytest.fixture(scope="session")
def foreign_key():
    """A key the certificate endpoint knows nothing about"""
    return _signing_material()


def token_claims(uid="user-1", **overrides):
    now = int(time.time())
    claims = {
        "iss": f"https://securetoken.google.com/{PROJECT_ID}",
        "aud": PROJECT_ID,
        "sub": uid,
        "user_id": uid,
        "iat": now,
        "exp": now + 3600,
        "auth_time": now,
        "email": f"{uid}@example.com",
        "name": "Test User",
        "picture": "https://example.com/avatar.png",
        "email_verified": True,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


@pytest.fixture
def make_token(signing_key):
    def _make(uid="user-1", kid=KEY_ID, private_pem=None, **overrides):
        return jwt.encode(
            token_claims(uid, **overrides),
            private_pem or signing_key[0],
            algorithm="RS256",
            headers={"kid": kid},
        )
    return _make


@pytest.fixture
def auth_header(make_token):
    def _header(uid="user-1", **overrides):
        return {"Authorization": f"Bearer {make_token(uid, **overrides)}"}
    return _header


@pytest.fixture
def certs_http(signing_key):
    return FakeHttp(json_response({KEY_ID: signing_key[1]}, headers={"Cache-Control": "public, max-age=600"}))


@pytest.fixture
def verifier(certs_http):
    return IdentityVerifier(PROJECT_ID, certs_url=CERTS_URL, http=certs_http)


@pytest.fixture
def upstream():
    return FakeHttp(make_response(200, JPEG_BYTES, {"Content-Type": "image/jpeg"}))


@pytest.fixture
def gateway(upstream):
    return TryOnGateway(api_key="segmind-key", api_url=UPSTREAM_URL, http=upstream, rng=random.Random(7))


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def cloud_api():
    return FakeApi()


@pytest.fixture
def storage_http():
    return FakeHttp(make_response(200, png_bytes()))


@pytest.fixture
def storage(uploader, cloud_api, storage_http):
    return PhotoStorage(enabled=True, uploader=uploader, api=cloud_api, http=storage_http)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def override_db_with(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()
    return _get_db


@pytest.fixture
def client(session_factory, verifier, gateway, storage):
    from fastapi.testclient import TestClient

    app.dependency_overrides[get_db] = override_db_with(session_factory)
    app.dependency_overrides[get_verifier] = lambda: verifier
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_storage] = lambda: storage
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
