"""Tests for the challenge and callback flows of the orchestrator."""

from datetime import UTC, datetime
from urllib.parse import parse_qsl, urlencode, urlsplit

import pytest

from rpengine.core.oidc.events import Continue, Handled, OIDCEvents, Skipped
from rpengine.core.oidc.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CorrelationError,
    ProtocolError,
    ProtocolValidationError,
    SecurityTokenError,
    SignatureKeyNotFoundError,
    StateError,
)
from rpengine.core.oidc.handler import EXPIRES_AT_TOKEN, AuthenticationOrchestrator, build_token_list
from rpengine.core.oidc.http import RequestContext, ResponseContext
from rpengine.core.oidc.message import ProtocolMessage, RedirectBehavior, ResponseMode, ResponseType
from rpengine.core.oidc.metadata import ProviderConfiguration, StaticConfigurationProvider
from rpengine.core.oidc.properties import (
    CORRELATION_KEY,
    REDIRECT_URI_FOR_CODE_KEY,
    USER_STATE_KEY,
    AuthProperties,
)
from rpengine.core.oidc.results import RequestAction
from rpengine.core.oidc.utils import compute_token_hash
from rpengine.core.oidc.validation import ProtocolValidator

ISSUER = "https://idp.example.com"
APP_HOST = "app.example.com"


def _params(response: ResponseContext) -> dict[str, str]:
    assert response.location is not None
    return dict(parse_qsl(urlsplit(response.location).query))


def _cookies(response: ResponseContext) -> dict[str, str]:
    return {c.name: c.value for c in response.cookies if c.value is not None}


def _token_requests(provider) -> list:
    return [r for r in provider.requests if r.url.path == "/token"]


async def _challenge(engine, properties=None, **request_kwargs):
    """Run a challenge; return the authorization request parameters and cookies."""
    request = RequestContext(scheme="https", host=APP_HOST, path="/secure", **request_kwargs)
    response = ResponseContext()
    result = await engine.challenge(request, response, properties)
    assert result.action == RequestAction.HANDLE
    return _params(response), _cookies(response)


def _callback(fields: dict[str, str], cookies: dict[str, str], method: str = "POST") -> RequestContext:
    if method == "GET":
        return RequestContext(
            method="GET",
            scheme="https",
            host=APP_HOST,
            path="/signin-oidc",
            query_string=urlencode(fields),
            cookies=dict(cookies),
        )
    return RequestContext(
        method=method,
        scheme="https",
        host=APP_HOST,
        path="/signin-oidc",
        content_type="application/x-www-form-urlencoded",
        body=urlencode(fields).encode(),
        cookies=dict(cookies),
    )


async def _code_login(engine, provider, properties=None):
    """Challenge, then post the code back to the callback path."""
    params, cookies = await _challenge(engine, properties)
    provider.nonce = params.get("nonce")
    response = ResponseContext()
    result = await engine.handle_request(_callback({"code": "code-1", "state": params["state"]}, cookies), response)
    return result, response


class CountingProvider(StaticConfigurationProvider):
    """Static provider that records refresh requests."""

    def __init__(self, configuration: ProviderConfiguration) -> None:
        super().__init__(configuration)
        self.refreshes = 0

    def refresh(self) -> None:
        self.refreshes += 1


class TestChallenge:
    """Tests for the authorization request."""

    async def test_authorization_request(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options(resource="https://api")) as engine:
            response = ResponseContext()
            request = RequestContext(scheme="https", host=APP_HOST, path="/secure")
            result = await engine.challenge(request, response)

        assert result.action == RequestAction.HANDLE
        assert response.status_code == 302
        assert response.location is not None
        assert response.location.startswith(f"{ISSUER}/authorize?")

        params = _params(response)
        assert params["client_id"] == "rp-client"
        assert params["redirect_uri"] == f"https://{APP_HOST}/signin-oidc"
        assert params["response_type"] == "code"
        assert params["response_mode"] == "form_post"
        assert params["scope"] == "openid profile"
        assert params["resource"] == "https://api"
        assert params["nonce"]
        assert params["state"]

        # One nonce cookie and one correlation cookie
        names = sorted(_cookies(response))
        assert len(names) == 2
        assert names[0].startswith(".rpengine.Correlation.OpenIdConnect.")
        assert names[1].startswith(".rpengine.OpenIdConnect.Nonce.")

    async def test_state_carries_properties(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            params, _ = await _challenge(engine, query_string="page=2")
            properties = engine.options.state_data_format.unprotect(params["state"])

        assert properties is not None
        assert properties.redirect_uri == "/secure?page=2"
        assert properties.items[REDIRECT_URI_FOR_CODE_KEY] == f"https://{APP_HOST}/signin-oidc"
        assert properties.items[CORRELATION_KEY]

    async def test_response_mode_omitted_for_code_query(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options(response_mode=ResponseMode.QUERY)) as engine:
            params, _ = await _challenge(engine)

        assert "response_mode" not in params

    async def test_no_nonce_when_not_required(self, make_options) -> None:
        options = make_options(protocol_validator=ProtocolValidator(require_nonce=False))
        async with AuthenticationOrchestrator(options) as engine:
            params, cookies = await _challenge(engine)

        assert "nonce" not in params
        assert len(cookies) == 1

    async def test_form_post_delivery(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options(redirect_behavior=RedirectBehavior.FORM_POST)) as engine:
            response = ResponseContext()
            await engine.challenge(RequestContext(scheme="https", host=APP_HOST), response)

        assert response.status_code == 200
        assert f'action="{ISSUER}/authorize"' in response.body
        assert 'name="client_id" value="rp-client"' in response.body

    async def test_hook_edits_message_and_user_state(self, make_options) -> None:
        def redirect(context):
            context.protocol_message.set_parameter("prompt", "login")
            context.protocol_message.state = "user-state"
            return Continue(context)

        options = make_options(events=OIDCEvents(on_redirect_to_identity_provider=redirect))
        async with AuthenticationOrchestrator(options) as engine:
            params, _ = await _challenge(engine)
            properties = engine.options.state_data_format.unprotect(params["state"])

        assert params["prompt"] == "login"
        assert properties is not None
        assert properties.items[USER_STATE_KEY] == "user-state"

    @pytest.mark.parametrize(("outcome", "action"), [(Handled(), RequestAction.HANDLE), (Skipped(), RequestAction.SKIP)])
    async def test_hook_short_circuits(self, make_options, outcome, action) -> None:
        options = make_options(events=OIDCEvents(on_redirect_to_identity_provider=lambda context: outcome))
        async with AuthenticationOrchestrator(options) as engine:
            response = ResponseContext()
            result = await engine.challenge(RequestContext(), response)

        assert result.action == action
        assert response.location is None

    async def test_missing_authorization_endpoint(self, make_options) -> None:
        options = make_options(configuration=ProviderConfiguration(issuer=ISSUER))
        async with AuthenticationOrchestrator(options) as engine:
            with pytest.raises(ConfigurationError):
                await engine.challenge(RequestContext(), ResponseContext())


class TestCodeFlow:
    """Tests for the authorization code flow callback."""

    async def test_successful_login(self, make_options, provider) -> None:
        async with AuthenticationOrchestrator(make_options(save_tokens=True)) as engine:
            result, response = await _code_login(engine, provider, AuthProperties(redirect_uri="/dashboard"))

        assert result.action == RequestAction.HANDLE
        assert result.authenticate_result is not None
        ticket = result.authenticate_result.ticket
        assert ticket is not None
        assert response.signed_in is ticket
        assert response.location == "/dashboard"
        assert ticket.scheme == "OpenIdConnect"
        assert ticket.find_first("sub") == "user-1"
        assert ticket.principal.name == "Test User"
        assert ticket.properties.redirect_uri is None
        assert CORRELATION_KEY not in ticket.properties.items
        assert ticket.properties.issued_utc is not None

        # Correlation and nonce cookies are both consumed
        assert len([c for c in response.cookies if c.is_deletion]) == 2

        form = dict(parse_qsl(_token_requests(provider)[0].content.decode()))
        assert form == {
            "client_id": "rp-client",
            "client_secret": "rp-secret",
            "code": "code-1",
            "grant_type": "authorization_code",
            "redirect_uri": f"https://{APP_HOST}/signin-oidc",
        }

        properties = ticket.properties
        assert properties.token_names() == ["access_token", "id_token", "refresh_token", "token_type", EXPIRES_AT_TOKEN]
        assert properties.get_token_value("access_token") == "access-token-1"
        expires_at = datetime.fromisoformat(properties.get_token_value(EXPIRES_AT_TOKEN) or "")
        remaining = (expires_at - datetime.now(UTC)).total_seconds()
        assert 3500 < remaining <= 3600

    async def test_tokens_not_saved_by_default(self, make_options, provider) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            result, _ = await _code_login(engine, provider)

        assert result.authenticate_result is not None
        assert result.authenticate_result.ticket is not None
        assert result.authenticate_result.ticket.properties.token_names() == []

    async def test_user_state_is_restored(self, make_options, provider) -> None:
        seen: list[str | None] = []

        def redirect(context):
            context.protocol_message.state = "user-state"

        def code_received(context):
            seen.append(context.protocol_message.state)

        events = OIDCEvents(on_redirect_to_identity_provider=redirect, on_authorization_code_received=code_received)
        async with AuthenticationOrchestrator(make_options(events=events)) as engine:
            await _code_login(engine, provider)

        assert seen == ["user-state"]

    async def test_token_validated_runs_once_with_nonce(self, make_options, provider) -> None:
        seen = []

        async def token_validated(context):
            seen.append((context.nonce, context.token_endpoint_response is not None))

        async with AuthenticationOrchestrator(make_options(events=OIDCEvents(on_token_validated=token_validated))) as engine:
            result, _ = await _code_login(engine, provider)

        assert result.failure is None
        assert len(seen) == 1
        assert seen[0][0] == provider.nonce
        assert seen[0][1]

    async def test_user_info_claims(self, make_options, provider) -> None:
        async with AuthenticationOrchestrator(make_options(get_claims_from_user_info_endpoint=True)) as engine:
            result, _ = await _code_login(engine, provider)

        assert result.authenticate_result is not None
        ticket = result.authenticate_result.ticket
        assert ticket is not None
        assert ticket.find_first("email") == "user@example.com"
        userinfo_request = [r for r in provider.requests if r.url.path == "/userinfo"][0]
        assert userinfo_request.headers["Authorization"] == "Bearer access-token-1"

    async def test_user_info_failure_goes_through_failed_event(self, make_options, provider) -> None:
        failures: list[Exception] = []

        def failed(context):
            failures.append(context.failure)

        provider.userinfo = {"sub": "someone-else"}
        options = make_options(
            get_claims_from_user_info_endpoint=True,
            events=OIDCEvents(on_authentication_failed=failed),
        )
        async with AuthenticationOrchestrator(options) as engine:
            result, response = await _code_login(engine, provider)

        assert isinstance(result.failure, ProtocolValidationError)
        assert failures == [result.failure]
        assert response.status_code == 400

    async def test_token_endpoint_error(self, make_options, provider) -> None:
        provider.token_status = 400
        provider.token_body = '{"error": "invalid_grant", "error_description": "code was already redeemed"}'

        async with AuthenticationOrchestrator(make_options()) as engine:
            result, response = await _code_login(engine, provider)

        assert isinstance(result.failure, ProtocolError)
        assert result.failure.error == "invalid_grant"
        assert response.signed_in is None
        assert "code was already redeemed" in response.body

    async def test_nonce_mismatch(self, make_options, provider) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            params, cookies = await _challenge(engine)
            provider.nonce = "not-the-nonce"
            result = await engine.handle_remote_authenticate(
                _callback({"code": "code-1", "state": params["state"]}, cookies),
                ResponseContext(),
            )

        assert isinstance(result.failure, ProtocolValidationError)
        assert "nonce" in str(result.failure)

    async def test_unknown_signing_key_requests_refresh(self, make_options, provider, provider_configuration) -> None:
        source = CountingProvider(provider_configuration)
        provider.id_token_claims = {"kid": "rotated-key"}

        options = make_options(configuration=None, configuration_provider=source)
        async with AuthenticationOrchestrator(options) as engine:
            result, _ = await _code_login(engine, provider)
            assert engine.configuration.current is None

        assert isinstance(result.failure, SignatureKeyNotFoundError)
        assert source.refreshes == 1

    async def test_no_refresh_when_disabled(self, make_options, provider, provider_configuration) -> None:
        source = CountingProvider(provider_configuration)
        provider.id_token_claims = {"kid": "rotated-key"}

        options = make_options(configuration=None, configuration_provider=source, refresh_on_issuer_key_not_found=False)
        async with AuthenticationOrchestrator(options) as engine:
            await _code_login(engine, provider)

        assert source.refreshes == 0

    async def test_failed_event_can_handle(self, make_options, provider) -> None:
        provider.token_status = 400
        provider.token_body = '{"error": "invalid_grant"}'

        options = make_options(events=OIDCEvents(on_authentication_failed=lambda context: Handled()))
        async with AuthenticationOrchestrator(options) as engine:
            result, response = await _code_login(engine, provider)

        assert result.action == RequestAction.HANDLE
        assert result.failure is None
        assert response.body == ""

    async def test_failed_event_can_replace_failure(self, make_options, provider) -> None:
        provider.token_status = 400
        provider.token_body = '{"error": "invalid_grant"}'

        def failed(context):
            context.failure = AuthenticationError("Please sign in again.")

        async with AuthenticationOrchestrator(make_options(events=OIDCEvents(on_authentication_failed=failed))) as engine:
            result, _ = await _code_login(engine, provider)

        assert str(result.failure) == "Please sign in again."

    async def test_hook_redeems_code(self, make_options, provider, sign_token) -> None:
        """A hook supplying the token response replaces the engine's redemption."""

        def code_received(context):
            context.token_endpoint_response = ProtocolMessage(
                {"id_token": sign_token(nonce=provider.nonce), "access_token": "hook-token"}
            )

        options = make_options(save_tokens=True, events=OIDCEvents(on_authorization_code_received=code_received))
        async with AuthenticationOrchestrator(options) as engine:
            result, _ = await _code_login(engine, provider)

        assert _token_requests(provider) == []
        assert result.authenticate_result is not None
        ticket = result.authenticate_result.ticket
        assert ticket is not None
        assert ticket.properties.get_token_value("access_token") == "hook-token"

    async def test_missing_token_endpoint_is_fatal(self, make_options, provider, discovery_document, jwks) -> None:
        document = dict(discovery_document)
        del document["token_endpoint"]
        options = make_options(configuration=ProviderConfiguration.from_document(document, jwks))

        async with AuthenticationOrchestrator(options) as engine:
            with pytest.raises(ConfigurationError):
                await _code_login(engine, provider)

    async def test_ticket_received_hook(self, make_options, provider) -> None:
        def ticket_received(context):
            context.return_uri = "/welcome"

        async with AuthenticationOrchestrator(make_options(events=OIDCEvents(on_ticket_received=ticket_received))) as engine:
            _, response = await _code_login(engine, provider)

        assert response.location == "/welcome"


class TestHybridFlow:
    """Tests for the code id_token response type."""

    async def _login(self, engine, provider, sign_token, code_hash_of: str = "code-1"):
        params, cookies = await _challenge(engine)
        provider.nonce = params["nonce"]
        id_token = sign_token(nonce=params["nonce"], c_hash=compute_token_hash(code_hash_of, "RS256"))
        fields = {"code": "code-1", "id_token": id_token, "state": params["state"]}
        return await engine.handle_remote_authenticate(_callback(fields, cookies), ResponseContext())

    async def test_successful_login(self, make_options, provider, sign_token) -> None:
        validated = []
        options = make_options(
            response_type=ResponseType.CODE_ID_TOKEN,
            events=OIDCEvents(on_token_validated=lambda context: validated.append(context.nonce)),
        )
        async with AuthenticationOrchestrator(options) as engine:
            result = await self._login(engine, provider, sign_token)

        assert result.succeeded
        assert validated == [provider.nonce]
        assert len(_token_requests(provider)) == 1

    async def test_c_hash_mismatch(self, make_options, provider, sign_token) -> None:
        async with AuthenticationOrchestrator(make_options(response_type=ResponseType.CODE_ID_TOKEN)) as engine:
            result = await self._login(engine, provider, sign_token, code_hash_of="another-code")

        assert isinstance(result.failure, ProtocolValidationError)
        assert _token_requests(provider) == []

    async def test_subject_mismatch(self, make_options, provider, sign_token) -> None:
        provider.id_token_claims = {"sub": "user-2"}

        async with AuthenticationOrchestrator(make_options(response_type=ResponseType.CODE_ID_TOKEN)) as engine:
            result = await self._login(engine, provider, sign_token)

        assert isinstance(result.failure, SecurityTokenError)
        assert "sub claim does not match" in str(result.failure)


class TestCallbackFailures:
    """Tests for callbacks rejected before any token is validated."""

    async def test_missing_correlation_cookie(self, make_options) -> None:
        failed = []
        options = make_options(events=OIDCEvents(on_authentication_failed=lambda context: failed.append(context)))
        async with AuthenticationOrchestrator(options) as engine:
            params, _ = await _challenge(engine)
            response = ResponseContext()
            result = await engine.handle_request(_callback({"code": "c", "state": params["state"]}, {}), response)

        assert isinstance(result.failure, CorrelationError)
        assert failed == []
        assert response.status_code == 400
        assert response.headers["Content-Type"] == "text/html;charset=UTF-8"
        assert "Correlation failed." in response.body

    async def test_remote_failure_hook(self, make_options) -> None:
        def remote_failure(context):
            context.response.redirect("/error")
            return Handled()

        async with AuthenticationOrchestrator(make_options(events=OIDCEvents(on_remote_failure=remote_failure))) as engine:
            params, _ = await _challenge(engine)
            response = ResponseContext()
            result = await engine.handle_request(_callback({"code": "c", "state": params["state"]}, {}), response)

        assert result.action == RequestAction.HANDLE
        assert isinstance(result.failure, CorrelationError)
        assert response.location == "/error"
        assert response.body == ""

    async def test_provider_error(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            params, cookies = await _challenge(engine)
            fields = {"error": "access_denied", "error_description": "User cancelled", "state": params["state"]}
            result = await engine.handle_remote_authenticate(_callback(fields, cookies), ResponseContext())

        assert isinstance(result.failure, ProtocolError)
        assert result.failure.error == "access_denied"
        assert result.properties is not None
        assert "User cancelled" in str(result.failure)

    async def test_tokens_in_query_string(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            request = _callback({"id_token": "a.b.c", "state": "s"}, {}, method="GET")
            result = await engine.handle_remote_authenticate(request, ResponseContext())

        assert isinstance(result.failure, ProtocolError)

    @pytest.mark.parametrize(
        "fields",
        [
            {"code": "c"},
            {"code": "c", "state": "not-a-protected-state"},
        ],
    )
    async def test_unreadable_state(self, make_options, fields) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            result = await engine.handle_remote_authenticate(_callback(fields, {}), ResponseContext())

        assert isinstance(result.failure, StateError)

    async def test_state_from_another_key(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            params, cookies = await _challenge(engine)

        other = make_options(data_protection_key="ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100")
        async with AuthenticationOrchestrator(other) as engine:
            result = await engine.handle_remote_authenticate(
                _callback({"code": "c", "state": params["state"]}, cookies),
                ResponseContext(),
            )

        assert isinstance(result.failure, StateError)

    async def test_unrecognized_requests_can_be_skipped(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options(skip_unrecognized_requests=True)) as engine:
            missing_state = await engine.handle_request(_callback({"code": "c"}, {}), ResponseContext())
            query_tokens = await engine.handle_request(
                _callback({"id_token": "a.b.c"}, {}, method="GET"),
                ResponseContext(),
            )
            no_message = await engine.handle_request(_callback({}, {}, method="PUT"), ResponseContext())

        assert missing_state.action == RequestAction.SKIP
        assert query_tokens.action == RequestAction.SKIP
        assert no_message.action == RequestAction.SKIP

    async def test_no_message(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            request = RequestContext(method="POST", path="/signin-oidc", content_type="application/json", body=b"{}")
            result = await engine.handle_remote_authenticate(request, ResponseContext())

        assert str(result.failure) == "No message."

    async def test_message_received_hook_skips(self, make_options) -> None:
        options = make_options(events=OIDCEvents(on_message_received=lambda context: Skipped()))
        async with AuthenticationOrchestrator(options) as engine:
            result = await engine.handle_request(_callback({"code": "c"}, {}), ResponseContext())

        assert result.action == RequestAction.SKIP

    async def test_other_paths_continue(self, make_options) -> None:
        async with AuthenticationOrchestrator(make_options()) as engine:
            result = await engine.handle_request(RequestContext(path="/somewhere"), ResponseContext())

        assert result.action == RequestAction.CONTINUE


class TestBuildTokenList:
    """Tests for build_token_list."""

    def test_expires_at(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=UTC)
        tokens = build_token_list(ProtocolMessage({"access_token": "at", "expires_in": "60"}), now)

        assert [(t.name, t.value) for t in tokens] == [
            ("access_token", "at"),
            (EXPIRES_AT_TOKEN, "2024-01-01T00:01:00+00:00"),
        ]

    def test_non_integer_expires_in_is_ignored(self) -> None:
        tokens = build_token_list(ProtocolMessage({"access_token": "at", "expires_in": "soon"}), datetime.now(UTC))
        assert [t.name for t in tokens] == ["access_token"]
