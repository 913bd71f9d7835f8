"""Unit tests for credential verification.

Tests cover:
- Basic and bearer login handshakes
- Plain HTTP fallback for insecure registries
- Config keys written as URLs reduced to the registry host
- Retry classification: rejections are terminal, 5xx is retried
- Aggregated VerificationError with provenance messages
- Deadline expiry reported separately from rejection
"""

from __future__ import annotations

import base64
import json
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from structlog.testing import capture_logs

from hephaestus_credentials.context import OperationContext
from hephaestus_credentials.errors import (
    AuthorizationRejectedError,
    CredentialsError,
    CredentialsTimeoutError,
    InvalidRegistryAddressError,
    TransientVerificationError,
    VerificationError,
)
from hephaestus_credentials.schemas import AuthConfig
from hephaestus_credentials.verifier import (
    RegistryAuthClient,
    load_docker_config,
    registry_host,
    verify_credentials,
)

Handler = Callable[[httpx.Request], httpx.Response]

BEARER = 'Bearer realm="https://auth.r.io/token",service="r.io",scope="repository:a:pull"'


def _write_config(directory: Path, auths: dict[str, dict[str, str]]) -> Path:
    (directory / "config.json").write_text(json.dumps({"auths": auths}))
    return directory


def _client(handler: Handler, insecure: tuple[str, ...] = ()) -> RegistryAuthClient:
    return RegistryAuthClient(insecure, transport=httpx.MockTransport(handler))


def _basic_header(username: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{username}:{password}".encode()).decode()


def basic_registry(username: str, password: str, calls: list[httpx.Request]) -> Handler:
    """Registry accepting one username/password pair with a Basic challenge."""

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.headers.get("Authorization") == _basic_header(username, password):
            return httpx.Response(200)
        return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="r.io"'})

    return handler


class TestRegistryAuthClient:
    """Tests for the login handshake."""

    @pytest.mark.requirement("VERIFY-001")
    def test_open_registry(self, ctx: OperationContext) -> None:
        """Test a registry answering 200 needs no credentials."""
        _client(lambda request: httpx.Response(200)).login(ctx, "r.io", AuthConfig())

    @pytest.mark.requirement("VERIFY-001")
    def test_basic_challenge(self, ctx: OperationContext) -> None:
        """Test basic credentials are presented after a Basic challenge."""
        calls: list[httpx.Request] = []
        client = _client(basic_registry("abc", "hi", calls))

        client.login(ctx, "r.io", AuthConfig(auth="YWJjOmhp"))

        assert [str(c.url) for c in calls] == ["https://r.io/v2/", "https://r.io/v2/"]
        assert "Authorization" not in calls[0].headers

    @pytest.mark.requirement("VERIFY-001")
    def test_basic_challenge_rejected(self, ctx: OperationContext) -> None:
        """Test wrong basic credentials are rejected."""
        client = _client(basic_registry("abc", "hi", []))

        with pytest.raises(AuthorizationRejectedError, match="status 401"):
            client.login(ctx, "r.io", AuthConfig(username="abc", password="wrong"))

    @pytest.mark.requirement("VERIFY-001")
    def test_bearer_token_flow(self, ctx: OperationContext) -> None:
        """Test a Bearer challenge fetches a token from the realm."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if request.url.host == "auth.r.io":
                assert request.headers["Authorization"] == _basic_header("user", "pass")
                return httpx.Response(200, json={"token": "tok"})
            if request.headers.get("Authorization") == "Bearer tok":
                return httpx.Response(200)
            return httpx.Response(401, headers={"WWW-Authenticate": BEARER})

        _client(handler).login(ctx, "r.io", AuthConfig(username="user", password="pass"))

        token_request = calls[1]
        assert token_request.url.params["service"] == "r.io"
        assert token_request.url.params["account"] == "user"
        assert token_request.url.params["scope"] == "repository:a:pull"
        assert len(calls) == 3

    @pytest.mark.requirement("VERIFY-001")
    def test_registry_token_presented_directly(self, ctx: OperationContext) -> None:
        """Test a stored registry token skips the realm request."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if request.headers.get("Authorization") == "Bearer stored":
                return httpx.Response(200)
            return httpx.Response(401, headers={"WWW-Authenticate": BEARER})

        _client(handler).login(
            ctx, "r.io", AuthConfig(username="u", password="stored", registrytoken="stored")
        )

        assert all(c.url.host == "r.io" for c in calls)

    @pytest.mark.requirement("VERIFY-001")
    def test_identity_token_exchanged(self, ctx: OperationContext) -> None:
        """Test an identity token is posted as a refresh token grant."""
        forms: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.r.io":
                forms.append(request.content.decode())
                return httpx.Response(200, json={"access_token": "tok"})
            if request.headers.get("Authorization") == "Bearer tok":
                return httpx.Response(200)
            return httpx.Response(401, headers={"WWW-Authenticate": BEARER})

        _client(handler).login(ctx, "r.io", AuthConfig(identitytoken="id-token"))

        assert "grant_type=refresh_token" in forms[0]
        assert "refresh_token=id-token" in forms[0]

    @pytest.mark.requirement("VERIFY-002")
    def test_insecure_registry_falls_back_to_http(self, ctx: OperationContext) -> None:
        """Test an insecure registry is retried over plain HTTP."""
        schemes: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            schemes.append(request.url.scheme)
            if request.url.scheme == "https":
                raise httpx.ConnectError("tls handshake failed", request=request)
            return httpx.Response(200)

        _client(handler, insecure=("registry.local:5000",)).login(
            ctx, "registry.local:5000", AuthConfig()
        )

        assert schemes == ["https", "http"]

    @pytest.mark.requirement("VERIFY-002")
    def test_secure_registry_never_uses_http(self, ctx: OperationContext) -> None:
        """Test a secure registry fails instead of downgrading."""
        schemes: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            schemes.append(request.url.scheme)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientVerificationError):
            _client(handler).login(ctx, "r.io", AuthConfig())

        assert schemes == ["https"]

    @pytest.mark.requirement("VERIFY-002")
    @pytest.mark.parametrize("status", [500, 503, 429])
    def test_transient_statuses(self, ctx: OperationContext, status: int) -> None:
        """Test server errors and throttling are transient."""
        with pytest.raises(TransientVerificationError, match=f"status {status}"):
            _client(lambda request: httpx.Response(status)).login(ctx, "r.io", AuthConfig())

    @pytest.mark.requirement("VERIFY-002")
    @pytest.mark.parametrize("status", [400, 404])
    def test_unexpected_status_not_a_rejection(self, ctx: OperationContext, status: int) -> None:
        """Test statuses other than 401/403 do not blame the credentials."""
        with pytest.raises(TransientVerificationError, match=f"unexpected status {status}"):
            _client(lambda request: httpx.Response(status)).login(ctx, "r.io", AuthConfig())

    @pytest.mark.requirement("VERIFY-006")
    def test_url_form_key_contacts_registry_host(self, ctx: OperationContext) -> None:
        """Test a kubectl-style Docker Hub key targets the Hub registry."""
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200)

        _client(handler).login(ctx, "https://index.docker.io/v1/", AuthConfig())

        assert urls == ["https://registry-1.docker.io/v2/"]

    @pytest.mark.requirement("VERIFY-006")
    def test_insecure_lookup_uses_host(self, ctx: OperationContext) -> None:
        """Test a URL-form key still matches the insecure registry list."""
        schemes: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            schemes.append(request.url.scheme)
            if request.url.scheme == "https":
                raise httpx.ConnectError("tls handshake failed", request=request)
            return httpx.Response(200)

        _client(handler, insecure=("registry.local:5000",)).login(
            ctx, "http://registry.local:5000/", AuthConfig()
        )

        assert schemes == ["https", "http"]

    @pytest.mark.requirement("VERIFY-006")
    def test_unparseable_key_is_invalid_address(self, ctx: OperationContext) -> None:
        """Test a key with a bad port raises InvalidRegistryAddressError."""
        with pytest.raises(InvalidRegistryAddressError, match="r.io:notaport"):
            _client(lambda request: httpx.Response(200)).login(
                ctx, "r.io:notaport", AuthConfig()
            )


class TestRegistryHost:
    """Tests for registry_host()."""

    @pytest.mark.requirement("VERIFY-006")
    @pytest.mark.parametrize(
        ("key", "host"),
        [
            ("r.io", "r.io"),
            ("registry.local:5000", "registry.local:5000"),
            ("https://index.docker.io/v1/", "registry-1.docker.io"),
            ("docker.io", "registry-1.docker.io"),
            ("http://registry.local:5000/v2/", "registry.local:5000"),
            ("HTTPS://Quay.io", "Quay.io"),
        ],
    )
    def test_reduces_key_to_host(self, key: str, host: str) -> None:
        """Test scheme and path are stripped from config keys."""
        assert registry_host(key) == host


class TestVerifyCredentials:
    """Tests for verify_credentials()."""

    @pytest.mark.requirement("VERIFY-003")
    def test_all_servers_verified(self, ctx: OperationContext, tmp_path: Path) -> None:
        """Test success when every server accepts its credentials."""
        config_dir = _write_config(tmp_path, {"r.io": {"auth": "YWJjOmhp"}})

        with capture_logs() as logs:
            verify_credentials(
                ctx,
                config_dir,
                [],
                ["basic authentication username and password"],
                auth_client=_client(basic_registry("abc", "hi", [])),
            )

        assert "credentials_verified" in [entry["event"] for entry in logs]

    @pytest.mark.requirement("VERIFY-003")
    def test_rejection_not_retried(self, ctx: OperationContext, tmp_path: Path) -> None:
        """Test rejected credentials fail after a single attempt."""
        calls: list[httpx.Request] = []
        config_dir = _write_config(tmp_path, {"r.io": {"username": "abc", "password": "no"}})

        with (
            patch.object(OperationContext, "sleep") as mock_sleep,
            pytest.raises(VerificationError) as exc_info,
        ):
            verify_credentials(
                ctx,
                config_dir,
                [],
                ["basic authentication username and password"],
                auth_client=_client(basic_registry("abc", "hi", calls)),
            )

        assert len(calls) == 2
        mock_sleep.assert_not_called()
        failure = exc_info.value.failures[0]
        assert isinstance(failure.error, AuthorizationRejectedError)

    @pytest.mark.requirement("VERIFY-003")
    def test_transient_retried_six_times(self, ctx: OperationContext, tmp_path: Path) -> None:
        """Test a persistently unavailable registry is attempted six times."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        config_dir = _write_config(tmp_path, {"r.io": {"auth": "YWJjOmhp"}})

        with (
            patch.object(OperationContext, "sleep") as mock_sleep,
            pytest.raises(VerificationError) as exc_info,
        ):
            verify_credentials(ctx, config_dir, [], [], auth_client=_client(handler))

        assert len(calls) == 6
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert isinstance(exc_info.value.failures[0].error, TransientVerificationError)

    @pytest.mark.requirement("VERIFY-003")
    def test_transient_then_success(self, ctx: OperationContext, tmp_path: Path) -> None:
        """Test a registry that recovers passes verification."""
        responses = iter([503, 503, 200])
        config_dir = _write_config(tmp_path, {"r.io": {"auth": "YWJjOmhp"}})

        with patch.object(OperationContext, "sleep"):
            verify_credentials(
                ctx,
                config_dir,
                [],
                [],
                auth_client=_client(lambda request: httpx.Response(next(responses))),
            )

    @pytest.mark.requirement("VERIFY-003")
    def test_unexpected_status_retried(self, ctx: OperationContext, tmp_path: Path) -> None:
        """Test a registry answering 404 is retried and not reported as unauthorized."""
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        config_dir = _write_config(tmp_path, {"r.io": {"auth": "YWJjOmhp"}})

        with (
            patch.object(OperationContext, "sleep"),
            pytest.raises(VerificationError) as exc_info,
        ):
            verify_credentials(ctx, config_dir, [], [], auth_client=_client(handler))

        assert len(calls) == 6
        assert isinstance(exc_info.value.failures[0].error, TransientVerificationError)
        assert "unauthorized" not in str(exc_info.value)

    @pytest.mark.requirement("VERIFY-004")
    def test_malformed_key_does_not_stop_other_servers(
        self, ctx: OperationContext, tmp_path: Path
    ) -> None:
        """Test an unparseable key is collected and later servers are still verified."""
        calls: list[httpx.Request] = []
        config_dir = _write_config(
            tmp_path,
            {
                "r.io:notaport": {"auth": "YWJjOmhp"},
                "good.io": {"auth": "YWJjOmhp"},
            },
        )

        with (
            patch.object(OperationContext, "sleep") as mock_sleep,
            pytest.raises(VerificationError) as exc_info,
        ):
            verify_credentials(
                ctx,
                config_dir,
                [],
                ["basic authentication username and password"],
                auth_client=_client(basic_registry("abc", "hi", calls)),
            )

        assert exc_info.value.servers == ["r.io:notaport"]
        assert isinstance(exc_info.value.failures[0].error, InvalidRegistryAddressError)
        assert {request.url.host for request in calls} == {"good.io"}
        mock_sleep.assert_not_called()

    @pytest.mark.requirement("VERIFY-004")
    def test_failures_aggregated_with_provenance(
        self, ctx: OperationContext, tmp_path: Path
    ) -> None:
        """Test every failing server is reported with all help messages."""
        config_dir = _write_config(
            tmp_path,
            {
                "good.io": {"auth": "YWJjOmhp"},
                "bad1.io": {"username": "x", "password": "y"},
                "bad2.io": {"username": "x", "password": "z"},
            },
        )
        help_messages = [
            'secret "test-creds" in namespace "test-ns" '
            "(credentials for servers: good.io, bad1.io)",
            "basic authentication username and password",
        ]

        with capture_logs() as logs, pytest.raises(VerificationError) as exc_info:
            verify_credentials(
                ctx,
                config_dir,
                [],
                help_messages,
                auth_client=_client(basic_registry("abc", "hi", [])),
            )

        error = exc_info.value
        assert error.servers == ["bad1.io", "bad2.io"]
        message = str(error)
        assert "client credentials are invalid for registry 'bad1.io'" in message
        assert "client credentials are invalid for registry 'bad2.io'" in message
        assert 'secret "test-creds" in namespace "test-ns"' in message
        assert "basic authentication username and password" in message
        assert "unauthorized" in message
        failed = [e for e in logs if e["event"] == "credential_verification_failed"]
        assert [e["server"] for e in failed] == ["bad1.io", "bad2.io"]

    @pytest.mark.requirement("VERIFY-005")
    def test_deadline_reported_as_timeout(self, tmp_path: Path) -> None:
        """Test an expired deadline is not reported as bad credentials."""
        ctx = OperationContext(deadline=time.monotonic() - 1)
        config_dir = _write_config(tmp_path, {"r.io": {"auth": "YWJjOmhp"}})

        with pytest.raises(CredentialsTimeoutError):
            verify_credentials(
                ctx, config_dir, [], [], auth_client=_client(lambda r: httpx.Response(200))
            )

    @pytest.mark.requirement("VERIFY-005")
    def test_missing_config(self, tmp_path: Path) -> None:
        """Test a directory without config.json is a credentials error."""
        with pytest.raises(CredentialsError, match="cannot load docker config"):
            load_docker_config(tmp_path)

    @pytest.mark.requirement("VERIFY-005")
    def test_default_client_uses_insecure_list(
        self, ctx: OperationContext, tmp_path: Path
    ) -> None:
        """Test the default client honours the insecure registry list."""
        config_dir = _write_config(tmp_path, {"registry.local:5000": {"auth": "YWJjOmhp"}})
        seen: list[Any] = []

        def fake_login(self: RegistryAuthClient, ctx: Any, server: str, auth: Any) -> None:
            seen.append(self.insecure_registries)

        with patch.object(RegistryAuthClient, "login", fake_login):
            verify_credentials(ctx, config_dir, ["registry.local:5000"], [])

        assert seen == [frozenset({"registry.local:5000"})]
