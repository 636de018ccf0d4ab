"""Tests for the ServiceNow REST client module."""

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from foundry_mcp.core.auth import BasicAuth, OAuthAuth, TokenAuth
from foundry_mcp.core.client import (
    SCRIPT_OUTPUT_MARKER,
    RetryPolicy,
    ServiceNowClient,
    build_capture_script,
    normalize_instance_url,
    parse_script_output,
    validate_instance_url,
    version_from_build_tag,
)
from foundry_mcp.core.errors import ErrorKind, ServiceNowError


def make_response(
    status_code: int = 200,
    json_data: Any = None,
    headers: dict[str, str] | None = None,
    reason_phrase: str = "OK",
) -> MagicMock:
    """Build a mock httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data if json_data is not None else {}
    response.text = "" if json_data is None else json.dumps(json_data)
    response.headers = headers or {}
    response.reason_phrase = reason_phrase
    return response


class TestNormalizeInstanceUrl:
    """Test instance URL normalization."""

    @pytest.mark.parametrize(
        "raw",
        [
            "dev123.service-now.com",
            "DEV123.service-now.com",
            "https://dev123.service-now.com/",
            "http://dev123.service-now.com",
            "  https://DEV123.service-now.com//  ",
        ],
    )
    def test_variants_share_canonical_form(self, raw: str) -> None:
        """All spellings of one host should normalize to the same URL."""
        assert normalize_instance_url(raw) == "https://dev123.service-now.com"

    @pytest.mark.parametrize(
        "raw",
        ["dev123.service-now.com", "HTTP://Example.com/", "https://x.y/"],
    )
    def test_idempotent(self, raw: str) -> None:
        """Normalizing twice should give the same result as once."""
        once = normalize_instance_url(raw)
        assert normalize_instance_url(once) == once

    def test_validate_returns_normalized(self) -> None:
        """A well-formed host should validate to its canonical URL."""
        assert validate_instance_url("DEV123.service-now.com/") == "https://dev123.service-now.com"

    @pytest.mark.parametrize("raw", ["dev.service-now.com:abc", "https://dev.service-now.com:44x"])
    def test_validate_rejects_bad_port(self, raw: str) -> None:
        """Ports httpx cannot parse should raise INVALID_INSTANCE."""
        with pytest.raises(ServiceNowError) as exc_info:
            validate_instance_url(raw)

        assert exc_info.value.kind is ErrorKind.INVALID_INSTANCE
        assert raw in exc_info.value.message


class TestHelpers:
    """Test module-level helpers."""

    def test_version_from_build_tag(self) -> None:
        """Release name should be extracted and capitalized."""
        assert version_from_build_tag("glide-vancouver-07-06-2023__patch1") == "Vancouver"

    def test_version_from_unrecognized_tag(self) -> None:
        """Unrecognized tags should be kept, only capitalized."""
        assert version_from_build_tag("custom") == "Custom"

    def test_parse_script_output_json_payload(self) -> None:
        """Marker payload should be split into lines, mutations and error."""
        payload = json.dumps({"lines": ["a", "b"], "mutations": ["m1"], "error": None})
        output = parse_script_output(f"{SCRIPT_OUTPUT_MARKER}[t1]: {payload}", "t1")

        assert output.lines == ["a", "b"]
        assert output.mutations == ["m1"]
        assert output.error is None
        assert output.text == "a\nb"

    def test_parse_script_output_list_payload(self) -> None:
        """A bare JSON array should be treated as output lines."""
        output = parse_script_output(f'{SCRIPT_OUTPUT_MARKER}[t1]: ["x"]', "t1")
        assert output.lines == ["x"]

    def test_parse_script_output_without_marker(self) -> None:
        """Messages without the marker should be returned verbatim."""
        output = parse_script_output("plain message", "t1")
        assert output.lines == ["plain message"]

    def test_build_capture_script_embeds_tag(self) -> None:
        """The capture wrapper should contain the script and tagged marker."""
        wrapped = build_capture_script("gs.info('hi');", "abc")
        assert "gs.info('hi');" in wrapped
        assert f"{SCRIPT_OUTPUT_MARKER}[abc]" in wrapped


class TestRetryPolicy:
    """Test retry policy decisions."""

    def test_from_settings(self) -> None:
        """Policy should read the retry config section."""
        policy = RetryPolicy.from_settings(
            {"max_retries": 5, "initial_delay": 0.5, "max_delay": 4, "multiplier": 3}
        )
        assert policy.max_retries == 5
        assert policy.initial_delay == 0.5
        assert policy.max_delay == 4.0
        assert policy.multiplier == 3.0

    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_retryable_set_is_exact(self, kind: ErrorKind) -> None:
        """Only the three transient kinds should be retried."""
        policy = RetryPolicy()
        expected = kind in {
            ErrorKind.INSTANCE_UNAVAILABLE,
            ErrorKind.TOKEN_EXPIRED,
            ErrorKind.RATE_LIMITED,
        }
        assert policy.should_retry(ServiceNowError(kind, "x"), attempt=1) is expected

    def test_no_retry_after_max(self) -> None:
        """Attempts beyond max_retries should not be retried."""
        policy = RetryPolicy(max_retries=2)
        error = ServiceNowError(ErrorKind.RATE_LIMITED, "x")
        assert policy.should_retry(error, 2) is True
        assert policy.should_retry(error, 3) is False


class TestAuthHeader:
    """Test Authorization header construction."""

    def test_basic(self) -> None:
        """Basic auth should be base64 of user:pass."""
        client = ServiceNowClient("dev.service-now.com", BasicAuth("admin", "secret"))
        expected = base64.b64encode(b"admin:secret").decode()
        assert client._auth_header() == f"Basic {expected}"

    def test_token(self) -> None:
        """Token auth should send the raw token as bearer."""
        client = ServiceNowClient("dev.service-now.com", TokenAuth("tok"))
        assert client._auth_header() == "Bearer tok"

    def test_oauth_without_token_fails(self) -> None:
        """OAuth without an access token should raise AUTHENTICATION_FAILED."""
        client = ServiceNowClient("dev.service-now.com", OAuthAuth("cid", "cs"))
        assert client.needs_token is True

        with pytest.raises(ServiceNowError) as exc_info:
            client._auth_header()
        assert exc_info.value.kind is ErrorKind.AUTHENTICATION_FAILED

    def test_oauth_with_token(self) -> None:
        """OAuth with an access token should send it as bearer."""
        client = ServiceNowClient("dev.service-now.com", OAuthAuth("cid", "cs"))
        client.set_access_token("access-1")
        assert client._auth_header() == "Bearer access-1"
        assert client.needs_token is False

    def test_oauth_expired_token(self) -> None:
        """An expired OAuth token should raise TOKEN_EXPIRED."""
        client = ServiceNowClient("dev.service-now.com", OAuthAuth("cid", "cs"))
        client.set_access_token("old", expiry=datetime.now(timezone.utc) - timedelta(minutes=1))

        with pytest.raises(ServiceNowError) as exc_info:
            client._auth_header()
        assert exc_info.value.kind is ErrorKind.TOKEN_EXPIRED

    def test_unknown_variant_raises(self) -> None:
        """An unsupported auth object should not silently default."""
        client = ServiceNowClient("dev.service-now.com", BasicAuth("a", "b"))
        client.auth = MagicMock()

        with pytest.raises(ServiceNowError) as exc_info:
            client._auth_header()
        assert exc_info.value.kind is ErrorKind.AUTHENTICATION_FAILED

    def test_set_access_token_rejects_non_oauth(self) -> None:
        """Access tokens should only apply to OAuth configs."""
        client = ServiceNowClient("dev.service-now.com", BasicAuth("a", "b"))
        with pytest.raises(ServiceNowError):
            client.set_access_token("tok")


class TestRequest:
    """Test single-request handling and status classification."""

    @pytest.fixture
    def client(self) -> ServiceNowClient:
        """Create a client with fast retries."""
        return ServiceNowClient(
            "dev.service-now.com",
            BasicAuth("admin", "secret"),
            timeout=5.0,
            retry_policy=RetryPolicy(max_retries=2, initial_delay=0.01, max_delay=0.05),
        )

    @pytest.mark.asyncio
    async def test_successful_request(self, client: ServiceNowClient) -> None:
        """Should return parsed JSON and send auth and timeout."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(200, {"result": [{"sys_id": "1"}]})

            result = await client._request("GET", "/api/now/table/incident")

            assert result == {"result": [{"sys_id": "1"}]}
            kwargs = mock_request.call_args.kwargs
            assert kwargs["headers"]["Authorization"].startswith("Basic ")
            assert isinstance(kwargs["timeout"], httpx.Timeout)

    @pytest.mark.asyncio
    async def test_empty_body_returns_empty_dict(self, client: ServiceNowClient) -> None:
        """204 responses should return an empty dict."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(204)
            assert await client._request("DELETE", "/api/now/table/x/1") == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (401, ErrorKind.AUTHENTICATION_FAILED),
            (403, ErrorKind.ACL_DENIED),
            (404, ErrorKind.TABLE_NOT_ACCESSIBLE),
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.INSTANCE_UNAVAILABLE),
            (502, ErrorKind.INSTANCE_UNAVAILABLE),
            (503, ErrorKind.INSTANCE_UNAVAILABLE),
            (504, ErrorKind.INSTANCE_UNAVAILABLE),
            (400, ErrorKind.UNKNOWN_ERROR),
            (418, ErrorKind.UNKNOWN_ERROR),
        ],
    )
    async def test_status_mapping(
        self, client: ServiceNowClient, status: int, kind: ErrorKind
    ) -> None:
        """Each non-2xx status should map to its error kind."""
        body = {"error": {"message": "boom"}}
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(status, body, reason_phrase="Err")

            with pytest.raises(ServiceNowError) as exc_info:
                await client._request("GET", "/api/now/table/incident")

            assert exc_info.value.kind is kind
            assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_rate_limit_records_retry_after(self, client: ServiceNowClient) -> None:
        """429 errors should carry the Retry-After header."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(429, {}, headers={"Retry-After": "60"})

            with pytest.raises(ServiceNowError) as exc_info:
                await client._request("GET", "/x")

            assert exc_info.value.details["retry_after"] == "60"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_instance_unavailable(self, client: ServiceNowClient) -> None:
        """Timeouts should surface as INSTANCE_UNAVAILABLE."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.TimeoutException("timed out")

            with pytest.raises(ServiceNowError) as exc_info:
                await client._request("GET", "/x", timeout=2.0)

            assert exc_info.value.kind is ErrorKind.INSTANCE_UNAVAILABLE
            assert "2.0s" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connect_error_maps_to_instance_unavailable(
        self, client: ServiceNowClient
    ) -> None:
        """DNS and refused connections should carry a suggestion."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = httpx.ConnectError("Connection refused")

            with pytest.raises(ServiceNowError) as exc_info:
                await client._request("GET", "/x")

            assert exc_info.value.kind is ErrorKind.INSTANCE_UNAVAILABLE
            assert exc_info.value.suggestion

    @pytest.mark.asyncio
    async def test_unparseable_url_maps_to_invalid_instance(self) -> None:
        """A host httpx cannot parse should raise INVALID_INSTANCE, not httpx.InvalidURL."""
        client = ServiceNowClient("dev.service-now.com:abc", BasicAuth("admin", "secret"))

        with pytest.raises(ServiceNowError) as exc_info:
            await client._request("GET", "/x")

        assert exc_info.value.kind is ErrorKind.INVALID_INSTANCE
        assert exc_info.value.suggestion

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: ServiceNowClient) -> None:
        """Non-JSON bodies should raise UNKNOWN_ERROR."""
        response = make_response(200, {})
        response.text = "<html>"
        response.json.side_effect = ValueError("no json")
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = response

            with pytest.raises(ServiceNowError) as exc_info:
                await client._request("GET", "/x")

            assert exc_info.value.kind is ErrorKind.UNKNOWN_ERROR


class TestRequestWithRetry:
    """Test retry and backoff behaviour."""

    @pytest.fixture
    def client(self) -> ServiceNowClient:
        """Create a client with a known retry policy."""
        return ServiceNowClient(
            "dev.service-now.com",
            BasicAuth("admin", "secret"),
            retry_policy=RetryPolicy(
                max_retries=3, initial_delay=1.0, max_delay=30.0, multiplier=2.0
            ),
        )

    @pytest.mark.asyncio
    async def test_succeeds_after_two_rate_limits(self, client: ServiceNowClient) -> None:
        """429, 429, 200 should succeed on the third attempt after 1s + 2s backoff."""
        responses = [
            make_response(429, {}),
            make_response(429, {}),
            make_response(200, {"result": "ok"}),
        ]
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request, \
                patch("foundry_mcp.core.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_request.side_effect = responses

            result = await client.request_with_retry("GET", "/x")

            assert result == {"result": "ok"}
            assert mock_request.call_count == 3
            delays = [c.args[0] for c in mock_sleep.call_args_list]
            assert delays == [1.0, 2.0]
            assert sum(delays) >= 1.0 + 1.0 * 2.0

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, client: ServiceNowClient) -> None:
        """At most max_retries + 1 attempts, then the last error unchanged."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request, \
                patch("foundry_mcp.core.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_request.return_value = make_response(503, {"error": {"message": "down"}})

            with pytest.raises(ServiceNowError) as exc_info:
                await client.request_with_retry("GET", "/x")

            assert exc_info.value.kind is ErrorKind.INSTANCE_UNAVAILABLE
            assert mock_request.call_count == 4
            assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_delay_capped_at_max(self) -> None:
        """Backoff should never exceed max_delay."""
        client = ServiceNowClient(
            "dev.service-now.com",
            BasicAuth("a", "b"),
            retry_policy=RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=3.0),
        )
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request, \
                patch("foundry_mcp.core.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_request.return_value = make_response(429, {})

            with pytest.raises(ServiceNowError):
                await client.request_with_retry("GET", "/x")

            assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self, client: ServiceNowClient) -> None:
        """Non-transient errors should be raised after one attempt."""
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request, \
                patch("foundry_mcp.core.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_request.return_value = make_response(403, {})

            with pytest.raises(ServiceNowError) as exc_info:
                await client.request_with_retry("GET", "/x")

            assert exc_info.value.kind is ErrorKind.ACL_DENIED
            assert mock_request.call_count == 1
            mock_sleep.assert_not_called()


class TestAuthenticate:
    """Test OAuth token exchange."""

    @pytest.mark.asyncio
    async def test_client_credentials_grant(self) -> None:
        """Should exchange client credentials and store the token."""
        client = ServiceNowClient("dev.service-now.com", OAuthAuth("cid", "cs"))
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(
                200, {"access_token": "new-token", "expires_in": 1800}
            )

            await client.authenticate()

            kwargs = mock_request.call_args.kwargs
            assert mock_request.call_args.args[:2] == ("POST", "/oauth_token.do")
            assert kwargs["data"]["grant_type"] == "client_credentials"
            assert "Authorization" not in kwargs["headers"]
            assert client.auth.access_token == "new-token"
            assert client.auth.expiry is not None

    @pytest.mark.asyncio
    async def test_refresh_token_grant(self) -> None:
        """A stored refresh token should be used when present."""
        client = ServiceNowClient(
            "dev.service-now.com", OAuthAuth("cid", "cs", refresh_token="r1")
        )
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(200, {"access_token": "t"})

            await client.authenticate()

            form = mock_request.call_args.kwargs["data"]
            assert form["grant_type"] == "refresh_token"
            assert form["refresh_token"] == "r1"

    @pytest.mark.asyncio
    async def test_rejected_exchange(self) -> None:
        """A 401 from the token endpoint should be AUTHENTICATION_FAILED."""
        client = ServiceNowClient("dev.service-now.com", OAuthAuth("cid", "cs"))
        with patch.object(httpx.AsyncClient, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(401, {})

            with pytest.raises(ServiceNowError) as exc_info:
                await client.authenticate()

            assert exc_info.value.kind is ErrorKind.AUTHENTICATION_FAILED


class TestQueryMethods:
    """Test higher-level read methods."""

    @pytest.fixture
    def client(self) -> ServiceNowClient:
        """Create a basic-auth client."""
        return ServiceNowClient("dev.service-now.com", BasicAuth("admin", "secret"))

    @pytest.mark.asyncio
    async def test_query_table_params(self, client: ServiceNowClient) -> None:
        """query_table should send sysparm parameters and return the result list."""
        with patch.object(client, "request_with_retry", new_callable=AsyncMock) as mock_req:
            mock_req.return_value = {"result": [{"number": "INC1"}]}

            records = await client.query_table("incident", "active=true", ["number"], 5)

            assert records == [{"number": "INC1"}]
            params = mock_req.call_args.kwargs["params"]
            assert params == {
                "sysparm_limit": "5",
                "sysparm_query": "active=true",
                "sysparm_fields": "number",
            }

    @pytest.mark.asyncio
    async def test_test_connection_reads_build_tag(self, client: ServiceNowClient) -> None:
        """test_connection should parse the version from glide.buildtag."""
        with patch.object(client, "query_table", new_callable=AsyncMock) as mock_query:
            mock_query.return_value = [{"value": "glide-washingtondc-12-20-2023"}]

            info = await client.test_connection()

            assert info.version == "Washingtondc"
            assert mock_query.call_args.args[1] == "name=glide.buildtag"

    @pytest.mark.asyncio
    async def test_get_instance_info_tolerates_acl(self, client: ServiceNowClient) -> None:
        """Unreadable properties should not fail the whole lookup."""
        async def fake_property(name: str) -> str | None:
            if name == "glide.builddate":
                raise ServiceNowError(ErrorKind.ACL_DENIED, "denied")
            return {"glide.buildtag": "glide-xanadu-1", "glide.buildname": "Xanadu"}[name]

        with patch.object(client, "get_property", side_effect=fake_property):
            info = await client.get_instance_info()

        assert info.version == "Xanadu"
        assert info.build_name == "Xanadu"
        assert info.build_date is None

    @pytest.mark.asyncio
    async def test_get_current_user(self, client: ServiceNowClient) -> None:
        """Should combine the session user, user record and roles."""
        with patch.object(client, "request_with_retry", new_callable=AsyncMock) as mock_req, \
                patch.object(client, "query_table", new_callable=AsyncMock) as mock_query:
            mock_req.side_effect = [
                {"result": {"user_sys_id": "u1"}},
                {"result": {"sys_id": "u1", "user_name": "admin", "active": "true"}},
            ]
            mock_query.return_value = [{"role.name": "admin"}, {"role.name": "itil"}]

            user = await client.get_current_user()

            assert user.sys_id == "u1"
            assert user.user_name == "admin"
            assert user.roles == ["admin", "itil"]
            assert user.active is True

    @pytest.mark.asyncio
    async def test_get_current_user_without_session(self, client: ServiceNowClient) -> None:
        """No user sys_id should raise AUTHENTICATION_FAILED."""
        with patch.object(client, "request_with_retry", new_callable=AsyncMock) as mock_req:
            mock_req.return_value = {"result": {}}

            with pytest.raises(ServiceNowError) as exc_info:
                await client.get_current_user()

            assert exc_info.value.kind is ErrorKind.AUTHENTICATION_FAILED


class TestExecuteScript:
    """Test background script dispatch through a temporary fix script."""

    @pytest.fixture
    def client(self) -> ServiceNowClient:
        """Create a client with no poll delay."""
        return ServiceNowClient(
            "dev.service-now.com", BasicAuth("admin", "secret"), script_poll_delay=0
        )

    @staticmethod
    def fake_request(sys_id: str | None, captured: dict[str, Any] | None = None):
        """Answer the create POST with sys_id and every other call with {}."""
        async def respond(method, endpoint, **kwargs):
            if method == "POST":
                if captured is not None:
                    captured["script"] = kwargs["body"]["script"]
                return {"result": {"sys_id": sys_id} if sys_id else {}}
            return {}
        return respond

    @pytest.mark.asyncio
    async def test_full_flow(self, client: ServiceNowClient) -> None:
        """Create, trigger, read output and delete the temporary record."""
        captured: dict[str, Any] = {}

        async def fake_query(table, query=None, fields=None, limit=100):
            tag = query.split("[", 1)[1].split("]", 1)[0]
            payload = json.dumps({"lines": ["hello"], "mutations": [], "error": None})
            return [{"message": f"{SCRIPT_OUTPUT_MARKER}[{tag}]: {payload}"}]

        with patch.object(
            client, "_request", side_effect=self.fake_request("fix1", captured)
        ) as mock_request, patch.object(client, "query_table", side_effect=fake_query):
            output = await client.execute_script("gs.info('hello');", description="test")

            assert output.lines == ["hello"]
            assert output.captured is True
            assert "gs.info('hello');" in captured["script"]
            methods = [c.args[0] for c in mock_request.call_args_list]
            assert methods == ["POST", "PATCH", "DELETE"]
            assert mock_request.call_args_list[2].args[1].endswith("/fix1")

    @pytest.mark.asyncio
    async def test_create_not_retried(self, client: ServiceNowClient) -> None:
        """A failed create should surface at once, without a second POST."""
        failure = ServiceNowError(ErrorKind.INSTANCE_UNAVAILABLE, "Request timed out")

        with patch.object(client, "_request", new_callable=AsyncMock) as mock_request, \
                patch("foundry_mcp.core.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_request.side_effect = failure

            with pytest.raises(ServiceNowError) as exc_info:
                await client.execute_script("gs.info(1);")

            assert exc_info.value is failure
            assert mock_request.await_count == 1
            assert mock_request.call_args.args[0] == "POST"
            mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_sys_id(self, client: ServiceNowClient) -> None:
        """A create response without sys_id should raise SCRIPT_ERROR."""
        with patch.object(client, "_request", side_effect=self.fake_request(None)):
            with pytest.raises(ServiceNowError) as exc_info:
                await client.execute_script("gs.info(1);")

            assert exc_info.value.kind is ErrorKind.SCRIPT_ERROR

    @pytest.mark.asyncio
    async def test_record_deleted_when_output_read_fails(self, client: ServiceNowClient) -> None:
        """The temporary record should be deleted even if reading output fails."""
        with patch.object(
            client, "_request", side_effect=self.fake_request("fix2")
        ) as mock_request, \
                patch.object(client, "query_table", new_callable=AsyncMock) as mock_query:
            mock_query.side_effect = ServiceNowError(ErrorKind.ACL_DENIED, "no syslog")

            with pytest.raises(ServiceNowError):
                await client.execute_script("gs.info(1);")

            assert mock_request.call_args_list[-1].args[0] == "DELETE"

    @pytest.mark.asyncio
    async def test_trigger_error_without_output(self, client: ServiceNowClient) -> None:
        """A failed trigger with no captured output should be re-raised."""
        trigger_error = ServiceNowError(ErrorKind.INSTANCE_UNAVAILABLE, "timed out")
        respond = self.fake_request("fix3")

        async def fake_request(method, endpoint, **kwargs):
            if method == "PATCH":
                raise trigger_error
            return await respond(method, endpoint, **kwargs)

        with patch.object(client, "_request", side_effect=fake_request), \
                patch.object(client, "query_table", new_callable=AsyncMock) as mock_query:
            mock_query.return_value = []

            with pytest.raises(ServiceNowError) as exc_info:
                await client.execute_script("gs.info(1);")

            assert exc_info.value is trigger_error

    @pytest.mark.asyncio
    async def test_no_output_captured(self, client: ServiceNowClient) -> None:
        """A run with no marker line should report captured=False."""
        with patch.object(client, "_request", side_effect=self.fake_request("fix4")), \
                patch.object(client, "query_table", new_callable=AsyncMock) as mock_query:
            mock_query.return_value = []

            output = await client.execute_script("var x = 1;")

            assert output.captured is False
