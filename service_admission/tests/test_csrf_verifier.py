"""
Unit tests for the CSRF verifier.
"""

import string
import time

import jwt
import pytest
from unittest.mock import MagicMock

from service_admission.app.csrf import CSRF_HEADER_NAME, CsrfVerifier
from shared.errors import InvalidCsrfTokenError

SECRET = "csrf-secret-for-tests-0123456789abcdefgh"
BASE64URL_ALPHABET = string.ascii_letters + string.digits + "-_"


class FakeClock:
    """Seconds clock advanced by hand."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TestCsrfVerifier:
    """Test cases for CsrfVerifier."""

    @pytest.fixture
    def verifier(self):
        """Create CsrfVerifier instance."""
        return CsrfVerifier(SECRET)

    @pytest.fixture
    def token(self, verifier):
        """Freshly issued token."""
        return verifier.generate_csrf_token().token

    def _request(self, method="POST", path="/admission/usage", cookies=None, headers=None):
        request = MagicMock()
        request.method = method
        request.url.path = path
        request.cookies = cookies or {}
        request.headers = headers or {}
        return request

    def test_short_secret_rejected(self):
        """Test weak secrets are refused at construction."""
        with pytest.raises(ValueError):
            CsrfVerifier("short")

    def test_valid_token(self, verifier, token):
        """Test matching cookie and header verify."""
        assert verifier.verify_csrf_token(token, token) is True

    def test_cookie_value_is_token(self, verifier):
        """Test cookie and header carry the same value."""
        issued = verifier.generate_csrf_token()

        assert issued.cookie_value == issued.token

    def test_tokens_are_unique(self, verifier):
        """Test every token carries its own nonce."""
        assert verifier.generate_csrf_token().token != verifier.generate_csrf_token().token

    @pytest.mark.parametrize("cookie,header", [(None, "x"), ("x", None), ("", ""), (None, None)])
    def test_missing_values(self, verifier, cookie, header):
        """Test absent cookie or header fails."""
        assert verifier.verify_csrf_token(cookie, header) is False

    def test_mismatch(self, verifier, token):
        """Test two valid but different tokens fail."""
        other = verifier.generate_csrf_token().token

        assert verifier.verify_csrf_token(token, other) is False

    def test_any_single_character_change_fails(self, verifier, token):
        """Test tampering anywhere in the token is detected."""
        for i, char in enumerate(token):
            if char == ".":
                continue
            replacement = "A" if char != "A" else "B"
            tampered = token[:i] + replacement + token[i + 1:]

            assert verifier.verify_csrf_token(tampered, tampered) is False, f"position {i}"

    def test_signature_pad_bits_rejected(self, verifier, token):
        """Test every alternate spelling of the signature's last character fails."""
        head, last = token[:-1], token[-1]
        for char in BASE64URL_ALPHABET:
            if char == last:
                continue
            tampered = head + char

            assert verifier.verify_csrf_token(tampered, tampered) is False

    def test_expired_token(self):
        """Test tokens past their expiry fail."""
        clock = FakeClock(time.time())
        verifier = CsrfVerifier(SECRET, expiry_seconds=60, clock=clock)
        token = verifier.generate_csrf_token().token

        assert verifier.verify_csrf_token(token, token) is True

        clock.advance(60)
        assert verifier.verify_csrf_token(token, token) is False

    def test_expiry_follows_injected_clock(self):
        """Test a token from a future clock stays valid on that clock."""
        clock = FakeClock(time.time() + 30 * 24 * 3600)
        verifier = CsrfVerifier(SECRET, expiry_seconds=60, clock=clock)
        token = verifier.generate_csrf_token().token

        clock.advance(59)
        assert verifier.verify_csrf_token(token, token) is True

    def test_wrong_secret(self, verifier):
        """Test tokens from another deployment fail."""
        foreign = CsrfVerifier("a-completely-different-secret-0123456789").generate_csrf_token().token

        assert verifier.verify_csrf_token(foreign, foreign) is False

    def test_wrong_token_type(self, verifier):
        """Test a session-shaped token signed with the same key fails."""
        now = int(time.time())
        token = jwt.encode(
            {"nonce": "n", "type": "session", "iat": now, "exp": now + 60},
            SECRET,
            algorithm="HS256"
        )

        assert verifier.verify_csrf_token(token, token) is False

    def test_verify_request_safe_method(self, verifier):
        """Test GET requests need no token."""
        verifier.verify_request(self._request(method="GET"))

    def test_verify_request_exempt_path(self, verifier):
        """Test exempt paths need no token."""
        verifier.verify_request(self._request(path="/api/auth/signin"))

    def test_verify_request_missing_token(self, verifier):
        """Test mutating requests without a token are rejected."""
        with pytest.raises(InvalidCsrfTokenError) as exc_info:
            verifier.verify_request(self._request(method="DELETE"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {}

    def test_verify_request_valid(self, token):
        """Test cookie plus header passes on a non-secure deployment."""
        verifier = CsrfVerifier(SECRET, secure_cookie=False)
        request = self._request(cookies={"csrf": token}, headers={CSRF_HEADER_NAME: token})

        verifier.verify_request(request)

    def test_verify_request_reads_host_cookie(self, verifier, token):
        """Test secure deployments read the __Host- prefixed cookie."""
        request = self._request(cookies={"csrf": token}, headers={CSRF_HEADER_NAME: token})

        with pytest.raises(InvalidCsrfTokenError):
            verifier.verify_request(request)

        request.cookies = {"__Host-csrf": token}
        verifier.verify_request(request)

    @pytest.mark.parametrize("method,protected", [
        ("GET", False), ("HEAD", False), ("OPTIONS", False),
        ("POST", True), ("put", True), ("PATCH", True), ("DELETE", True),
    ])
    def test_requires_csrf_protection(self, method, protected):
        """Test which methods are state-changing."""
        assert CsrfVerifier.requires_csrf_protection(method) is protected

    def test_cookie_config(self, verifier):
        """Test cookie attributes."""
        config = verifier.cookie_config()

        assert config["key"] == "__Host-csrf"
        assert config["httponly"] is True
        assert config["secure"] is True
        assert config["samesite"] == "strict"
        assert config["path"] == "/"
        assert config["max_age"] == 24 * 3600
