"""
ServiceNow REST client for Foundry MCP.

Provides an async HTTP client bound to one instance and one AuthConfig,
with status-code classification into the error taxonomy and bounded
exponential backoff for transient failures.
"""

import asyncio
import base64
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from .auth import AuthConfig, BasicAuth, OAuthAuth, TokenAuth
from .errors import RETRYABLE_KINDS, ErrorKind, ServiceNowError

logger = logging.getLogger(__name__)

SCRIPT_OUTPUT_MARKER = "__SCRIPT_OUTPUT__"

_BUILD_TAG_RE = re.compile(r"glide-(\w+)-", re.IGNORECASE)


def normalize_instance_url(url: str) -> str:
    """Normalize an instance URL to its canonical form.

    Lower-cases, strips trailing slashes, defaults to https:// and upgrades
    http:// to https://. Applying it twice yields the same string.

    Args:
        url: Instance host or URL, e.g. "DEV123.service-now.com/".

    Returns:
        Canonical URL, e.g. "https://dev123.service-now.com".
    """
    normalized = url.strip().lower().rstrip("/")

    if normalized.startswith("http://"):
        normalized = "https://" + normalized[len("http://"):]
    elif not normalized.startswith("https://"):
        normalized = f"https://{normalized}"

    return normalized


def validate_instance_url(url: str) -> str:
    """Normalize an instance URL and check that httpx can parse it.

    Raises:
        ServiceNowError: INVALID_INSTANCE for a malformed host or port.
    """
    normalized = normalize_instance_url(url)
    try:
        parsed = httpx.URL(normalized)
    except httpx.InvalidURL as e:
        raise ServiceNowError(
            ErrorKind.INVALID_INSTANCE,
            f"Invalid instance URL: {url}",
            {"original_error": str(e)},
            'Use the instance host name (e.g., "dev12345.service-now.com")',
        ) from e
    if not parsed.host:
        raise ServiceNowError(
            ErrorKind.INVALID_INSTANCE,
            f"Invalid instance URL: {url}",
            suggestion='Use the instance host name (e.g., "dev12345.service-now.com")',
        )
    return normalized


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff settings."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retryable_kinds: frozenset[ErrorKind] = RETRYABLE_KINDS

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "RetryPolicy":
        """Build a policy from the ``retry`` config section."""
        return cls(
            max_retries=int(settings.get("max_retries", 3)),
            initial_delay=float(settings.get("initial_delay", 1.0)),
            max_delay=float(settings.get("max_delay", 30.0)),
            multiplier=float(settings.get("multiplier", 2.0)),
        )

    def should_retry(self, error: ServiceNowError, attempt: int) -> bool:
        """Whether a failed attempt (1-based) should be retried."""
        return error.kind in self.retryable_kinds and attempt <= self.max_retries


@dataclass
class InstanceInfo:
    version: str
    build_tag: str | None = None
    build_name: str | None = None
    build_date: str | None = None
    is_active: bool = True


@dataclass
class UserInfo:
    sys_id: str
    user_name: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    roles: list[str] = field(default_factory=list)
    active: bool = True


@dataclass
class ScriptOutput:
    """Output captured from a background script run."""

    lines: list[str] = field(default_factory=list)
    mutations: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0
    captured: bool = True

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def version_from_build_tag(build_tag: str) -> str:
    """Extract the release name from a build tag.

    "glide-vancouver-12-15-2025" -> "Vancouver". Unrecognized tags are
    returned unchanged.
    """
    match = _BUILD_TAG_RE.search(build_tag)
    version = match.group(1) if match else build_tag
    return version[:1].upper() + version[1:] if version else "unknown"


def parse_script_output(message: str, tag: str) -> ScriptOutput:
    """Parse the marker line written by the capture wrapper.

    Args:
        message: Syslog message containing the marker.
        tag: Execution tag embedded in the marker.

    Returns:
        ScriptOutput with lines, intercepted mutations and any error.
    """
    marker = f"{SCRIPT_OUTPUT_MARKER}[{tag}]:"
    _, found, payload = message.partition(marker)
    if not found:
        return ScriptOutput(lines=[message])

    try:
        data = json.loads(payload.strip())
    except json.JSONDecodeError:
        return ScriptOutput(lines=[payload.strip()])

    if isinstance(data, list):
        return ScriptOutput(lines=[str(line) for line in data])
    if not isinstance(data, dict):
        return ScriptOutput(lines=[str(data)])

    return ScriptOutput(
        lines=[str(line) for line in data.get("lines", [])],
        mutations=[str(m) for m in data.get("mutations", [])],
        error=data.get("error") or None,
    )


def build_capture_script(script: str, tag: str) -> str:
    """Wrap a script so its gs.info/gs.print output is captured.

    The collected lines, any mutations recorded by a mode guard and any
    thrown error are written to syslog as a single marker line.
    """
    marker = json.dumps(f"{SCRIPT_OUTPUT_MARKER}[{tag}]: ")
    return f"""
var __foundry_out = [];
var __foundry_error = null;
var __foundry_info = gs.info;
var __foundry_print = gs.print;
gs.info = function(msg) {{ __foundry_out.push(String(msg)); }};
gs.print = function(msg) {{ __foundry_out.push(String(msg)); }};
try {{
{script}
}} catch (e) {{
  __foundry_error = String((e && e.message) || e);
}} finally {{
  gs.info = __foundry_info;
  gs.print = __foundry_print;
}}
gs.info({marker} + JSON.stringify({{
  lines: __foundry_out,
  mutations: (typeof __foundry_mutations !== 'undefined') ? __foundry_mutations : [],
  error: __foundry_error
}}));
"""


class ServiceNowClient:
    """Async HTTP client for one ServiceNow instance.

    Handles:
    - Basic, OAuth (bearer) and token authentication
    - Status-code classification into ErrorKind
    - Retry with bounded exponential backoff for transient errors
    - Background script dispatch via a temporary fix-script record
    """

    def __init__(
        self,
        instance_url: str,
        auth: AuthConfig,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        script_poll_delay: float = 2.0,
    ):
        """Initialize the client.

        Args:
            instance_url: Instance host or URL (normalized on construction).
            auth: Authentication configuration.
            timeout: Default per-request timeout in seconds.
            retry_policy: Backoff settings for request_with_retry.
            script_poll_delay: Seconds to wait before reading script output.
        """
        self.instance_url = normalize_instance_url(instance_url)
        self.auth = auth
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.script_poll_delay = script_poll_delay

        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.instance_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # === Authentication ===

    def _auth_header(self) -> str:
        """Build the Authorization header for the configured variant.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED if OAuth has no access
                token yet; TOKEN_EXPIRED if it has expired.
        """
        auth = self.auth
        if isinstance(auth, BasicAuth):
            credentials = base64.b64encode(
                f"{auth.username}:{auth.password}".encode()
            ).decode("ascii")
            return f"Basic {credentials}"

        if isinstance(auth, OAuthAuth):
            if not auth.access_token:
                raise ServiceNowError(
                    ErrorKind.AUTHENTICATION_FAILED,
                    "No access token available. Call authenticate() first.",
                    suggestion="Use OAuth token exchange to get an access token",
                )
            if auth.expiry and auth.expiry <= datetime.now(timezone.utc):
                raise ServiceNowError(
                    ErrorKind.TOKEN_EXPIRED,
                    "OAuth access token has expired",
                    details={"expiry": auth.expiry.isoformat()},
                    suggestion="Reconnect or provide a refresh token",
                )
            return f"Bearer {auth.access_token}"

        if isinstance(auth, TokenAuth):
            return f"Bearer {auth.token}"

        raise ServiceNowError(
            ErrorKind.AUTHENTICATION_FAILED,
            f"Unsupported auth configuration: {type(auth).__name__}",
        )

    @property
    def needs_token(self) -> bool:
        """Whether an OAuth token exchange is required before requests."""
        return isinstance(self.auth, OAuthAuth) and not self.auth.access_token

    def set_access_token(
        self,
        token: str,
        expiry: datetime | None = None,
        refresh_token: str | None = None,
    ) -> None:
        """Store an OAuth access token obtained elsewhere."""
        if not isinstance(self.auth, OAuthAuth):
            raise ServiceNowError(
                ErrorKind.AUTHENTICATION_FAILED,
                f"Access tokens only apply to OAuth, not {self.auth.type.value}",
            )
        self.auth = self.auth.with_token(token, expiry, refresh_token)

    async def authenticate(self) -> None:
        """Exchange OAuth client credentials (or a refresh token) for an access token.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED if the exchange is refused.
        """
        auth = self.auth
        if not isinstance(auth, OAuthAuth):
            return

        form = {
            "client_id": auth.client_id,
            "client_secret": auth.client_secret,
        }
        if auth.refresh_token:
            form["grant_type"] = "refresh_token"
            form["refresh_token"] = auth.refresh_token
        else:
            form["grant_type"] = "client_credentials"

        data = await self._request(
            "POST", "/oauth_token.do", form=form, authenticated=False
        )
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise ServiceNowError(
                ErrorKind.AUTHENTICATION_FAILED,
                "OAuth token endpoint returned no access token",
                suggestion="Check the OAuth application's grant types",
            )

        expiry = None
        if data.get("expires_in"):
            expiry = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))
        self.set_access_token(token, expiry, data.get("refresh_token"))
        logger.info(f"Obtained OAuth access token for {self.instance_url}")

    # === Request handling ===

    @staticmethod
    def _error_message(response: httpx.Response) -> tuple[str, dict[str, Any]]:
        """Extract the ServiceNow error message and body from a response."""
        body: dict[str, Any] = {}
        try:
            parsed = response.json()
            if isinstance(parsed, dict):
                body = parsed
        except (ValueError, TypeError):
            pass

        error = body.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return message or response.reason_phrase or "Unknown error", body

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Map a non-2xx response to a ServiceNowError.

        Raises:
            ServiceNowError: Always, with the kind from the status table.
        """
        status = response.status_code
        message, body = self._error_message(response)
        details: dict[str, Any] = {"status": status, "body": body}

        if status == 401:
            raise ServiceNowError(
                ErrorKind.AUTHENTICATION_FAILED,
                "Authentication failed. Check your credentials.",
                details,
                "Verify username/password or refresh your OAuth token",
            )
        if status == 403:
            raise ServiceNowError(
                ErrorKind.ACL_DENIED,
                f"Access denied: {message}",
                details,
                "Check that your user has the required roles and ACL permissions",
            )
        if status == 404:
            raise ServiceNowError(
                ErrorKind.TABLE_NOT_ACCESSIBLE,
                f"Resource not found: {message}",
                details,
                "Verify the table name or endpoint exists",
            )
        if status == 429:
            details["retry_after"] = response.headers.get("Retry-After")
            raise ServiceNowError(
                ErrorKind.RATE_LIMITED,
                "Rate limit exceeded. Too many requests.",
                details,
                "Wait a moment before retrying",
            )
        if status in (500, 502, 503, 504):
            raise ServiceNowError(
                ErrorKind.INSTANCE_UNAVAILABLE,
                f"ServiceNow instance error: {message}",
                details,
                "The instance may be under maintenance. Try again later.",
            )
        raise ServiceNowError(
            ErrorKind.UNKNOWN_ERROR,
            f"Request failed with status {status}: {message}",
            details,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        form: dict[str, Any] | None = None,
        timeout: float | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Make a single HTTP request.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API endpoint path
            params: Query string parameters
            body: JSON request body
            form: Form-encoded request body
            timeout: Per-request timeout override in seconds
            authenticated: Whether to send the Authorization header

        Returns:
            Parsed JSON response (empty dict for empty bodies)

        Raises:
            ServiceNowError: Classified transport or HTTP failure
        """
        request_timeout = timeout or self.timeout
        headers = {"Authorization": self._auth_header()} if authenticated else {}

        try:
            client = await self._get_client()
            response = await client.request(
                method,
                endpoint,
                params=params,
                json=body,
                data=form,
                headers=headers,
                timeout=httpx.Timeout(request_timeout),
            )
        except httpx.InvalidURL as e:
            raise ServiceNowError(
                ErrorKind.INVALID_INSTANCE,
                f"Invalid instance URL: {self.instance_url}",
                {"endpoint": endpoint, "original_error": str(e)},
                'Use the instance host name (e.g., "dev12345.service-now.com")',
            ) from e
        except httpx.TimeoutException as e:
            raise ServiceNowError(
                ErrorKind.INSTANCE_UNAVAILABLE,
                f"Request timed out after {request_timeout}s",
                {"endpoint": endpoint, "timeout": request_timeout},
                "Check instance availability or increase timeout",
            ) from e
        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise ServiceNowError(
                ErrorKind.INSTANCE_UNAVAILABLE,
                f"Cannot connect to {self.instance_url}",
                {"original_error": str(e)},
                "Verify the instance URL is correct and the instance is accessible",
            ) from e
        except httpx.HTTPError as e:
            raise ServiceNowError(
                ErrorKind.UNKNOWN_ERROR,
                f"Request failed: {e}",
                {"endpoint": endpoint},
            ) from e

        if not 200 <= response.status_code < 300:
            self._raise_for_status(response)

        if response.status_code == 204 or not response.text:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ServiceNowError(
                ErrorKind.UNKNOWN_ERROR,
                "Response was not valid JSON",
                {"endpoint": endpoint, "raw": response.text[:500]},
            ) from e

    async def request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make a request, retrying transient failures with backoff.

        Only INSTANCE_UNAVAILABLE, TOKEN_EXPIRED and RATE_LIMITED are
        retried, for at most ``max_retries + 1`` attempts. The delay starts
        at ``initial_delay``, grows by ``multiplier`` and is capped at
        ``max_delay``. On exhaustion the last error is raised unchanged.
        """
        policy = self.retry_policy
        delay = min(policy.initial_delay, policy.max_delay)
        total_attempts = policy.max_retries + 1
        attempt = 0

        while True:
            attempt += 1
            try:
                return await self._request(
                    method, endpoint, params=params, body=body, timeout=timeout
                )
            except ServiceNowError as e:
                if not policy.should_retry(e, attempt):
                    raise
                logger.warning(
                    f"ServiceNow {e.kind.value} on {method} {endpoint} "
                    f"(attempt {attempt}/{total_attempts}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * policy.multiplier, policy.max_delay)

                if e.kind is ErrorKind.TOKEN_EXPIRED and isinstance(self.auth, OAuthAuth):
                    await self.authenticate()

    # === Query methods (read-only) ===

    async def query_table(
        self,
        table: str,
        query: str | None = None,
        fields: list[str] | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Query records from a table.

        Args:
            table: Table name, e.g. "incident"
            query: Encoded query, e.g. "active=true^priority=1"
            fields: Fields to return
            limit: Maximum records

        Returns:
            List of record dictionaries
        """
        params: dict[str, Any] = {"sysparm_limit": str(limit)}
        if query:
            params["sysparm_query"] = query
        if fields:
            params["sysparm_fields"] = ",".join(fields)

        data = await self.request_with_retry("GET", f"/api/now/table/{table}", params=params)
        result = data.get("result", []) if isinstance(data, dict) else []
        return result if isinstance(result, list) else []

    async def get_property(self, name: str) -> str | None:
        """Read a system property value from sys_properties."""
        records = await self.query_table(
            "sys_properties", f"name={name}", ["value"], limit=1
        )
        if not records:
            return None
        return records[0].get("value")

    async def test_connection(self) -> InstanceInfo:
        """Verify connectivity and read the instance version.

        Returns:
            InstanceInfo with version parsed from glide.buildtag
        """
        build_tag = await self.get_property("glide.buildtag") or "unknown"
        return InstanceInfo(version=version_from_build_tag(build_tag), build_tag=build_tag)

    async def get_instance_info(self) -> InstanceInfo:
        """Read build tag, name and date properties."""
        values: dict[str, str | None] = {}
        for prop in ("glide.buildtag", "glide.buildname", "glide.builddate"):
            try:
                values[prop] = await self.get_property(prop)
            except ServiceNowError as e:
                if e.kind not in (ErrorKind.ACL_DENIED, ErrorKind.TABLE_NOT_ACCESSIBLE):
                    raise
                logger.debug(f"Property {prop} not readable: {e}")
                values[prop] = None

        build_tag = values.get("glide.buildtag") or ""
        if build_tag:
            version = version_from_build_tag(build_tag)
        else:
            version = values.get("glide.buildname") or "Unknown"
        return InstanceInfo(
            version=version,
            build_tag=build_tag or None,
            build_name=values.get("glide.buildname"),
            build_date=values.get("glide.builddate"),
        )

    async def get_current_user(self) -> UserInfo:
        """Get the authenticated user's identity and roles.

        Raises:
            ServiceNowError: AUTHENTICATION_FAILED if the session has no user
        """
        session = await self.request_with_retry("GET", "/api/now/ui/user/current_user")
        result = session.get("result") if isinstance(session, dict) else None
        user_sys_id = result.get("user_sys_id") if isinstance(result, dict) else None
        if not user_sys_id:
            raise ServiceNowError(
                ErrorKind.AUTHENTICATION_FAILED,
                "Could not determine current user",
                {"response": session},
            )

        user_data = await self.request_with_retry(
            "GET",
            f"/api/now/table/sys_user/{user_sys_id}",
            params={"sysparm_fields": "sys_id,user_name,first_name,last_name,email,active"},
        )
        user = user_data.get("result", {}) if isinstance(user_data, dict) else {}

        role_records = await self.query_table(
            "sys_user_has_role", f"user={user_sys_id}", ["role.name"], limit=500
        )
        roles: list[str] = []
        for record in role_records:
            role = record.get("role.name") or record.get("role")
            if isinstance(role, dict):
                role = role.get("display_value") or role.get("value")
            if role:
                roles.append(str(role))

        return UserInfo(
            sys_id=str(user.get("sys_id") or user_sys_id),
            user_name=str(user.get("user_name", "")),
            first_name=str(user.get("first_name") or ""),
            last_name=str(user.get("last_name") or ""),
            email=str(user.get("email") or ""),
            roles=roles,
            active=user.get("active") in (True, "true"),
        )

    # === Script execution ===

    async def execute_script(
        self,
        script: str,
        timeout_seconds: int = 30,
        description: str | None = None,
        scope: str | None = None,
    ) -> ScriptOutput:
        """Run a background script through a temporary fix-script record.

        The script is wrapped to capture its output, stored as a fix script,
        triggered, and its output read back from syslog. The temporary
        record is always deleted afterwards.

        Args:
            script: Script text, already wrapped by any mode guard
            timeout_seconds: Execution timeout
            description: Description stored on the temporary record
            scope: Application scope to run in

        Returns:
            ScriptOutput captured from the run

        Raises:
            ServiceNowError: SCRIPT_ERROR if the record cannot be created,
                or the classified transport error of the trigger call
        """
        tag = uuid.uuid4().hex[:12]
        start = time.monotonic()

        record: dict[str, Any] = {
            "name": f"foundry_tmp_{tag}",
            "script": build_capture_script(script, tag),
            "description": description or "Background script via Foundry MCP",
            "active": "true",
        }
        if scope:
            record["sys_scope"] = scope

        # Not retried: a create that timed out may already exist on the instance
        created = await self._request(
            "POST", "/api/now/table/sys_script_fix", body=record, timeout=10.0
        )
        result = created.get("result") if isinstance(created, dict) else None
        script_sys_id = result.get("sys_id") if isinstance(result, dict) else None
        if not script_sys_id:
            raise ServiceNowError(
                ErrorKind.SCRIPT_ERROR,
                "Failed to create temporary script record",
                {"response": created},
                "Script execution requires write access to sys_script_fix",
            )

        trigger_error: ServiceNowError | None = None
        try:
            try:
                await self._request(
                    "PATCH",
                    f"/api/now/table/sys_script_fix/{script_sys_id}",
                    body={"state": "ready"},
                    timeout=float(timeout_seconds),
                )
            except ServiceNowError as e:
                # Output may still have been written before the failure
                logger.warning(f"Script trigger failed on {self.instance_url}: {e}")
                trigger_error = e

            await asyncio.sleep(self.script_poll_delay)

            logs = await self.query_table(
                "syslog",
                f"messageLIKE{SCRIPT_OUTPUT_MARKER}[{tag}]^ORDERBYDESCsys_created_on",
                ["message"],
                limit=1,
            )
        finally:
            try:
                await self._request(
                    "DELETE",
                    f"/api/now/table/sys_script_fix/{script_sys_id}",
                    timeout=5.0,
                )
            except ServiceNowError as e:
                logger.warning(f"Failed to delete temporary script {script_sys_id}: {e}")

        duration_ms = (time.monotonic() - start) * 1000

        if logs:
            output = parse_script_output(str(logs[0].get("message", "")), tag)
            output.duration_ms = duration_ms
            return output

        if trigger_error is not None:
            raise trigger_error

        return ScriptOutput(
            lines=["(script executed but no output captured)"],
            duration_ms=duration_ms,
            captured=False,
        )
